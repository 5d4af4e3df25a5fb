from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from .cache import ResolutionCache
from .classifier import DEFAULT_CONVENTIONS, Conventions, canonical_url, classify, extract_embedded_id
from .models import (
    AssetSnapshot,
    FailureReason,
    Identifier,
    IdentifierKind,
    ResolutionResult,
    UploadSnapshot,
    VideoRecord,
)
from .provider import ProviderError
from .repositories import Repository


logger = logging.getLogger(__name__)


class AssetProvider(Protocol):
    async def fetch_asset(self, asset_id: str) -> AssetSnapshot: ...

    async def fetch_upload(self, upload_id: str) -> UploadSnapshot: ...


def _short(value: str) -> str:
    return value if len(value) <= 24 else f"{value[:20]}..."


class Resolver:
    """Turns a stored reference into a playback URL or a typed failure.

    Expected outcomes (pending, deleted, errored, provider down, malformed input)
    come back as `ResolutionResult` values; nothing here raises for them.
    """

    def __init__(
        self,
        cache: ResolutionCache,
        provider: AssetProvider,
        *,
        conventions: Conventions = DEFAULT_CONVENTIONS,
        timeout: float = 10.0,
    ):
        self.cache = cache
        self.provider = provider
        self.conventions = conventions
        self.timeout = float(timeout)
        self._background: set[asyncio.Task] = set()

    def classify(self, raw: object) -> Identifier:
        return classify(raw, self.conventions)

    async def resolve(self, raw_reference: object) -> ResolutionResult:
        ident = self.classify(raw_reference)
        return await self.resolve_identifier(ident)

    async def resolve_identifier(self, ident: Identifier) -> ResolutionResult:
        if ident.kind is IdentifierKind.PLAYBACK_ID:
            return ResolutionResult.resolved(ident.id, canonical_url(ident.id, self.conventions))
        if ident.kind is IdentifierKind.UNKNOWN:
            return ResolutionResult.failed(FailureReason.MALFORMED)

        key = ident.id
        entry = self.cache.get(key)
        if entry is not None:
            return entry.result

        if not self.cache.reserve(key):
            logger.debug("Resolution already in flight for %s; waiting", _short(key))
            return await self.cache.wait(key)

        task = asyncio.ensure_future(self._resolve_reserved(ident))
        self._track(task)
        # A cancelled caller stops waiting; the shared resolution carries on.
        return await asyncio.shield(task)

    async def _resolve_reserved(self, ident: Identifier) -> ResolutionResult:
        key = ident.id
        try:
            if ident.kind is IdentifierKind.UPLOAD_ID:
                result = await self._resolve_upload(key)
            else:
                result = await self._resolve_asset(key)
        except BaseException as exc:
            self.cache.release(key, error=exc)
            raise
        self.cache.release(key, result)
        return result

    async def _call(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError(FailureReason.PROVIDER_UNAVAILABLE, "timeout") from exc

    async def _resolve_asset(self, asset_id: str) -> ResolutionResult:
        try:
            snap = await self._call(self.provider.fetch_asset(asset_id))
        except ProviderError as exc:
            result = ResolutionResult.failed(exc.reason, asset_id=asset_id)
        else:
            result = self._from_snapshot(snap, asset_id)
        self.cache.put(asset_id, result)
        self._log_outcome(asset_id, result)
        return result

    def _from_snapshot(self, snap: AssetSnapshot, asset_id: str) -> ResolutionResult:
        if snap.status == "errored":
            return ResolutionResult.failed(FailureReason.ASSET_ERRORED, asset_id=asset_id)
        playback_id = snap.public_playback_id()
        if snap.status == "ready" and playback_id:
            return ResolutionResult.resolved(
                playback_id, canonical_url(playback_id, self.conventions), asset_id=asset_id
            )
        return ResolutionResult.pending(asset_id=asset_id)

    async def _resolve_upload(self, upload_id: str) -> ResolutionResult:
        try:
            upload = await self._call(self.provider.fetch_upload(upload_id))
        except ProviderError as exc:
            result = ResolutionResult.failed(exc.reason)
            self.cache.put(upload_id, result)
            self._log_outcome(upload_id, result)
            return result

        if upload.status == "asset_created" and upload.asset_id:
            logger.info("Upload %s -> asset %s", _short(upload_id), _short(upload.asset_id))
            asset_ident = Identifier(IdentifierKind.ASSET_ID, upload.asset_id, upload.asset_id)
            result = (await self.resolve_identifier(asset_ident)).with_asset_id(upload.asset_id)
        elif upload.status == "errored":
            result = ResolutionResult.failed(FailureReason.ASSET_ERRORED)
        elif upload.status in ("cancelled", "timed_out"):
            result = ResolutionResult.failed(FailureReason.ASSET_DELETED)
        else:
            result = ResolutionResult.pending()

        self.cache.put(upload_id, result)
        self._log_outcome(upload_id, result)
        return result

    def _log_outcome(self, key: str, result: ResolutionResult) -> None:
        if result.is_resolved:
            logger.info("Resolved %s -> %s", _short(key), result.playback_id)
        elif result.is_terminal_failure:
            logger.warning("Resolution of %s failed permanently: %s", _short(key), result.reason.value)
        else:
            logger.info(
                "Resolution of %s not ready: %s",
                _short(key),
                result.reason.value if result.reason else result.outcome.value,
            )

    def identify_record(self, record: VideoRecord) -> Identifier:
        """Pick what to resolve for a record: its raw reference, else the id in its URL."""

        ident = self.classify(record.raw_reference)
        if ident.kind is not IdentifierKind.UNKNOWN:
            return ident
        embedded = extract_embedded_id(record.playback_url or "", self.conventions)
        if embedded:
            return self.classify(embedded)
        return ident

    async def resolve_record(self, record: VideoRecord, repo: Repository) -> tuple[ResolutionResult, str]:
        ident = self.identify_record(record)
        result = await self.resolve_identifier(ident)
        upload_id = ident.id if ident.kind is IdentifierKind.UPLOAD_ID else None
        # sqlite3 blocks; keep it off the event loop.
        written = await asyncio.to_thread(repo.apply_resolution, record.record_id, result, upload_id=upload_id)
        return result, written

    def schedule_record_patch(self, record: VideoRecord, repo: Repository) -> asyncio.Task:
        """Resolve and patch in the background. The outcome is only logged."""

        task = asyncio.ensure_future(self.resolve_record(record, repo))

        def _report(t: asyncio.Task) -> None:
            if t.cancelled():
                logger.info("Background patch of %s cancelled", record.record_id)
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Background patch of %s failed: %s", record.record_id, exc, exc_info=exc)
                return
            result, written = t.result()
            logger.info(
                "Background patch of %s: %s (%s)", record.record_id, result.outcome.value, written
            )

        task.add_done_callback(_report)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for in-flight and background work (used on shutdown and in tests)."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
