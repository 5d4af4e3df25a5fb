from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .models import LifecycleStatus
from .services import Services, build_services
from .settings import Settings


logger = logging.getLogger(__name__)


class RecordIn(BaseModel):
    owner_id: str
    raw_reference: str
    record_id: str | None = None


class ReconcileIn(BaseModel):
    owner_id: str | None = None
    dry_run: bool = False
    concurrency: int | None = None


def create_app(settings: Settings, *, services: Services | None = None) -> FastAPI:
    svc = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await svc.aclose()

    app = FastAPI(title="glint_video playback resolver API", version="0.1.0", lifespan=lifespan)
    app.state.services = svc

    if settings.GV_API_CORS_ALLOW_ALL:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _get_record_or_404(record_id: str):
        rec = svc.repo.get_record(record_id)
        if rec is None:
            raise HTTPException(status_code=404, detail=f"record not found: {record_id}")
        return rec

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/")
    def root():
        return {
            "service": "glint_video playback resolver API",
            "ok": True,
            "endpoints": {
                "health": "/health",
                "stats": "/stats",
                "resolve": "/resolve?ref=...",
                "records": "/records",
                "record": "/records/{record_id}",
                "reconcile": "/reconcile",
                "webhook": "/webhooks/mux",
                "docs": "/docs",
            },
        }

    @app.get("/stats")
    def stats():
        """Store and cache counters for troubleshooting."""
        out = svc.repo.stats()
        out["cache"] = svc.cache.stats()
        return out

    @app.get("/resolve")
    async def resolve(ref: str = ""):
        ident = svc.resolver.classify(ref)
        result = await svc.resolver.resolve_identifier(ident)
        return {"ref": ref, "kind": ident.kind.value, "result": result.to_dict()}

    @app.get("/records")
    def list_records(owner_id: str | None = None, limit: int = 50, offset: int = 0):
        limit = max(1, min(int(limit), 500))
        offset = max(0, int(offset))
        items = svc.repo.list_records(owner_id=owner_id, limit=limit, offset=offset)
        return {"records": [r.to_dict() for r in items], "limit": limit, "offset": offset}

    @app.post("/records")
    def create_record(payload: RecordIn):
        try:
            rec = svc.repo.insert_record(payload.owner_id, payload.raw_reference, record_id=payload.record_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail=f"record already exists: {payload.record_id}")
        return {"ok": True, "record": rec.to_dict()}

    @app.get("/records/{record_id}")
    async def get_record(record_id: str):
        """Return a record, resolving it lazily when it has no usable URL yet.

        The persisted record is patched in the background; the response carries
        the fresh resolution either way.
        """

        rec = await run_in_threadpool(_get_record_or_404, record_id)
        if rec.lifecycle_status is LifecycleStatus.READY and rec.playback_url:
            return {"record": rec.to_dict(), "resolution": None, "playback_url": rec.playback_url}
        if rec.lifecycle_status.is_terminal:
            return {
                "record": rec.to_dict(),
                "resolution": None,
                "playback_url": None,
                "message": "This video needs to be re-uploaded.",
            }

        result = await svc.resolver.resolve_identifier(svc.resolver.identify_record(rec))
        if result.is_resolved or result.is_terminal_failure:
            svc.resolver.schedule_record_patch(rec, svc.repo)
        return {
            "record": rec.to_dict(),
            "resolution": result.to_dict(),
            "playback_url": result.playback_url,
        }

    @app.post("/records/{record_id}/resolve")
    async def resolve_record(record_id: str):
        rec = await run_in_threadpool(_get_record_or_404, record_id)
        result, written = await svc.resolver.resolve_record(rec, svc.repo)
        updated = await run_in_threadpool(svc.repo.get_record, record_id)
        return {
            "resolution": result.to_dict(),
            "write": written,
            "record": updated.to_dict() if updated else None,
        }

    @app.post("/reconcile")
    async def reconcile(payload: ReconcileIn | None = None):
        payload = payload or ReconcileIn()
        records = await run_in_threadpool(svc.repo.iter_records, owner_id=payload.owner_id)
        job = svc.batch(dry_run=payload.dry_run, concurrency=payload.concurrency)
        summary = await job.reconcile(records)
        return summary.to_dict()

    @app.post("/webhooks/mux")
    async def mux_webhook(request: Request):
        # Always 200: a rejected event is not retried by the provider.
        try:
            event = await request.json()
        except ValueError:
            logger.info("Webhook body is not valid JSON")
            event = None
        outcome = await svc.webhooks.handle_notification(event)
        return outcome.to_dict()

    return app
