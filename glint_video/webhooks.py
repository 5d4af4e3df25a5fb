from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from .cache import ResolutionCache
from .classifier import DEFAULT_CONVENTIONS, Conventions, canonical_url
from .models import AssetSnapshot, PlaybackIdRef, ResolutionResult, VideoRecord
from .repositories import Repository


logger = logging.getLogger(__name__)

ASSET_READY = "video.asset.ready"
UNRECOGNIZED_EVENT = "unrecognized_event"


class PlaybackIdIn(BaseModel):
    id: str
    policy: str = ""


class AssetDataIn(BaseModel):
    id: str
    upload_id: str | None = None
    playback_ids: list[PlaybackIdIn] = []
    status: str | None = None


class AssetReadyEvent(BaseModel):
    type: Literal["video.asset.ready"]
    data: AssetDataIn


@dataclass(frozen=True)
class NotificationOutcome:
    accepted: bool
    reason: str | None = None
    event_type: str | None = None
    asset_id: str | None = None
    upload_id: str | None = None
    playback_id: str | None = None
    record_id: str | None = None
    write: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason,
            "type": self.event_type,
            "asset_id": self.asset_id,
            "upload_id": self.upload_id,
            "playback_id": self.playback_id,
            "record_id": self.record_id,
            "write": self.write,
        }


def _event_type(event: object) -> str | None:
    if isinstance(event, dict):
        t = event.get("type")
        return str(t) if t is not None else None
    return None


class WebhookReconciler:
    """Consumes provider "asset ready" notifications.

    Delivery is at-least-once and unordered. Replays are harmless: the cache
    write is idempotent and the record patch goes through
    `Repository.apply_resolution`, which skips terminal records and identical
    playback ids.
    """

    def __init__(self, cache: ResolutionCache, repo: Repository, *, conventions: Conventions = DEFAULT_CONVENTIONS):
        self.cache = cache
        self.repo = repo
        self.conventions = conventions

    def _reject(self, event: object, detail: str) -> NotificationOutcome:
        etype = _event_type(event)
        logger.info("Ignoring webhook (type=%s): %s", etype, detail)
        return NotificationOutcome(accepted=False, reason=UNRECOGNIZED_EVENT, event_type=etype)

    def _patch_record(self, result: ResolutionResult, upload_id: str | None) -> tuple[VideoRecord | None, str | None]:
        asset_id = result.asset_id
        record = self.repo.find_by_reference(upload_id=upload_id, asset_id=asset_id)
        if record is None:
            logger.warning("Asset %s is ready but no record references it", asset_id)
            return None, None
        write = self.repo.apply_resolution(record.record_id, result, upload_id=upload_id)
        logger.info("Webhook asset %s -> record %s (%s)", asset_id, record.record_id, write)
        return record, write

    async def handle_notification(self, event: object) -> NotificationOutcome:
        try:
            parsed = AssetReadyEvent.model_validate(event)
        except ValidationError as exc:
            return self._reject(event, f"not an asset-ready payload ({exc.error_count()} error(s))")

        data = parsed.data
        asset_id = data.id.strip()
        if not asset_id:
            return self._reject(event, "missing asset id")
        if data.status and data.status.strip().lower() != "ready":
            return self._reject(event, f"status {data.status!r} is not ready")

        snap = AssetSnapshot(
            id=asset_id,
            status="ready",
            playback_ids=tuple(PlaybackIdRef(p.id.strip(), p.policy.strip().lower()) for p in data.playback_ids),
            upload_id=(data.upload_id or "").strip() or None,
        )
        playback_id = snap.public_playback_id()
        if not playback_id:
            return self._reject(event, f"asset {asset_id} has no public playback id")

        result = ResolutionResult.resolved(
            playback_id, canonical_url(playback_id, self.conventions), asset_id=asset_id
        )
        self.cache.put(asset_id, result, snap.upload_id)

        record, write = await asyncio.to_thread(self._patch_record, result, snap.upload_id)

        return NotificationOutcome(
            accepted=True,
            event_type=ASSET_READY,
            asset_id=asset_id,
            upload_id=snap.upload_id,
            playback_id=playback_id,
            record_id=record.record_id if record else None,
            write=write,
        )
