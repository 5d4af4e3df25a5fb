from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from .classifier import classify, extract_embedded_id, is_canonical_url
from .models import IdentifierKind, LifecycleStatus, ReconcileSummary, ResolutionResult, VideoRecord
from .repositories import FROZEN, MARKED_TERMINAL, PATCHED, Repository
from .resolver import Resolver


logger = logging.getLogger(__name__)


class BatchReconciler:
    """Scan records, repair the broken ones, report counts.

    Healthy and terminal records are skipped without any provider call. At most
    `concurrency` records are in progress at once, which bounds outbound calls.
    """

    def __init__(self, resolver: Resolver, repo: Repository, *, concurrency: int = 4, dry_run: bool = False):
        self.resolver = resolver
        self.repo = repo
        self.concurrency = max(1, int(concurrency))
        self.dry_run = bool(dry_run)

    def is_healthy(self, record: VideoRecord) -> bool:
        conventions = self.resolver.conventions
        if not is_canonical_url(record.playback_url, conventions):
            return False
        if classify(record.playback_url, conventions).kind is IdentifierKind.PLAYBACK_ID:
            return True
        # Long provider playback ids look like asset ids; trust the id we stored ourselves.
        embedded = extract_embedded_id(record.playback_url or "", conventions)
        return bool(embedded and record.playback_id and embedded == record.playback_id)

    async def reconcile(self, records: Iterable[VideoRecord]) -> ReconcileSummary:
        summary = ReconcileSummary(dry_run=self.dry_run)
        pending = iter(records)

        async def _worker() -> None:
            # A shared iterator is safe here: next() never yields to the loop.
            for record in pending:
                try:
                    await self._reconcile_one(record, summary)
                except Exception:
                    summary.failed += 1
                    logger.exception("Reconcile failed for record %s", record.record_id)

        await asyncio.gather(*(_worker() for _ in range(self.concurrency)))
        logger.info(
            "Reconcile done: scanned=%d patched=%d skipped=%d terminal=%d deferred=%d malformed=%d failed=%d%s",
            summary.scanned,
            summary.patched,
            summary.skipped,
            summary.terminal,
            summary.deferred,
            summary.malformed,
            summary.failed,
            " (dry run)" if self.dry_run else "",
        )
        return summary

    async def _reconcile_one(self, record: VideoRecord, summary: ReconcileSummary) -> None:
        summary.scanned += 1

        if record.lifecycle_status.is_terminal:
            summary.skipped += 1
            return

        if self.is_healthy(record):
            if record.lifecycle_status is LifecycleStatus.READY:
                summary.skipped += 1
                return
            # Good URL but the status never caught up; no provider call needed.
            embedded = extract_embedded_id(record.playback_url or "", self.resolver.conventions) or ""
            result = ResolutionResult.resolved(embedded, str(record.playback_url), asset_id=record.asset_id)
            await self._apply(record, result, None, summary)
            return

        ident = self.resolver.identify_record(record)
        if ident.kind is IdentifierKind.UNKNOWN:
            summary.malformed += 1
            logger.warning("Record %s has no usable reference (%r)", record.record_id, record.raw_reference)
            return

        result = await self.resolver.resolve_identifier(ident)
        upload_id = ident.id if ident.kind is IdentifierKind.UPLOAD_ID else None

        if result.is_resolved or result.is_terminal_failure:
            await self._apply(record, result, upload_id, summary)
            return

        summary.deferred += 1
        if not self.dry_run:
            # Keeps any ids discovered so far; status and URL stay as they are.
            await asyncio.to_thread(self.repo.apply_resolution, record.record_id, result, upload_id=upload_id)

    async def _apply(
        self,
        record: VideoRecord,
        result: ResolutionResult,
        upload_id: str | None,
        summary: ReconcileSummary,
    ) -> None:
        if self.dry_run:
            if result.is_resolved:
                changed = record.playback_url != result.playback_url or record.lifecycle_status is not LifecycleStatus.READY
                if changed:
                    summary.patched += 1
                    summary.patched_ids.append(record.record_id)
                else:
                    summary.skipped += 1
            else:
                summary.terminal += 1
            return

        written = await asyncio.to_thread(self.repo.apply_resolution, record.record_id, result, upload_id=upload_id)
        if written == PATCHED:
            summary.patched += 1
            summary.patched_ids.append(record.record_id)
        elif written == MARKED_TERMINAL:
            summary.terminal += 1
        else:
            if written == FROZEN:
                logger.info("Record %s became terminal during reconcile; left as is", record.record_id)
            summary.skipped += 1
