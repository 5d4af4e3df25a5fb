from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class IdentifierKind(str, Enum):
    UPLOAD_ID = "upload_id"
    ASSET_ID = "asset_id"
    PLAYBACK_ID = "playback_id"
    UNKNOWN = "unknown"


class Outcome(str, Enum):
    RESOLVED = "resolved"
    PENDING = "pending"
    FAILED = "failed"


class FailureReason(str, Enum):
    ASSET_ERRORED = "asset_errored"
    ASSET_DELETED = "asset_deleted"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    MALFORMED = "malformed"


TERMINAL_REASONS = frozenset({FailureReason.ASSET_ERRORED, FailureReason.ASSET_DELETED})


class LifecycleStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    ERRORED = "errored"
    DELETED = "deleted"

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleStatus.ERRORED, LifecycleStatus.DELETED)


@dataclass(frozen=True)
class Identifier:
    kind: IdentifierKind
    value: str
    # Bare id; differs from `value` when the id was pulled out of a URL.
    id: str = ""


@dataclass(frozen=True)
class ResolutionResult:
    outcome: Outcome
    playback_id: str | None = None
    playback_url: str | None = None
    reason: FailureReason | None = None
    asset_id: str | None = None

    @classmethod
    def resolved(cls, playback_id: str, playback_url: str, *, asset_id: str | None = None) -> "ResolutionResult":
        return cls(Outcome.RESOLVED, playback_id=playback_id, playback_url=playback_url, asset_id=asset_id)

    @classmethod
    def pending(cls, *, asset_id: str | None = None) -> "ResolutionResult":
        return cls(Outcome.PENDING, asset_id=asset_id)

    @classmethod
    def failed(cls, reason: FailureReason, *, asset_id: str | None = None) -> "ResolutionResult":
        return cls(Outcome.FAILED, reason=reason, asset_id=asset_id)

    @property
    def is_resolved(self) -> bool:
        return self.outcome is Outcome.RESOLVED

    @property
    def is_terminal_failure(self) -> bool:
        return self.outcome is Outcome.FAILED and self.reason in TERMINAL_REASONS

    @property
    def is_permanent(self) -> bool:
        """Resolved mappings and provider-confirmed failures never change."""
        return self.is_resolved or self.is_terminal_failure

    def with_asset_id(self, asset_id: str | None) -> "ResolutionResult":
        if not asset_id or self.asset_id:
            return self
        return replace(self, asset_id=asset_id)

    @property
    def user_message(self) -> str | None:
        if self.is_terminal_failure:
            return "This video needs to be re-uploaded."
        if self.outcome is Outcome.PENDING:
            return "This video is still processing. Try again shortly."
        if self.reason is FailureReason.PROVIDER_UNAVAILABLE:
            return "Video service is temporarily unavailable."
        if self.reason is FailureReason.MALFORMED:
            return "This video reference is not recognized."
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "playback_id": self.playback_id,
            "playback_url": self.playback_url,
            "reason": self.reason.value if self.reason else None,
            "asset_id": self.asset_id,
            "message": self.user_message,
        }


@dataclass(frozen=True)
class PlaybackIdRef:
    id: str
    policy: str


@dataclass(frozen=True)
class AssetSnapshot:
    id: str
    status: str
    playback_ids: tuple[PlaybackIdRef, ...] = ()
    upload_id: str | None = None

    def public_playback_id(self) -> str | None:
        # Signed/private ids need a token to stream, so they are never selected.
        for p in self.playback_ids:
            if p.policy == "public" and p.id:
                return p.id
        return None


@dataclass(frozen=True)
class UploadSnapshot:
    id: str
    status: str
    asset_id: str | None = None


@dataclass
class VideoRecord:
    record_id: str
    owner_id: str
    raw_reference: str
    playback_url: str | None = None
    thumbnail_url: str | None = None
    lifecycle_status: LifecycleStatus = LifecycleStatus.PENDING
    asset_id: str | None = None
    upload_id: str | None = None
    playback_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "VideoRecord":
        d = dict(row)
        status = str(d.get("lifecycle_status") or "pending").strip().lower()
        try:
            lifecycle = LifecycleStatus(status)
        except ValueError:
            lifecycle = LifecycleStatus.PENDING
        return cls(
            record_id=str(d["record_id"]),
            owner_id=str(d.get("owner_id") or ""),
            raw_reference=str(d.get("raw_reference") or ""),
            playback_url=d.get("playback_url") or None,
            thumbnail_url=d.get("thumbnail_url") or None,
            lifecycle_status=lifecycle,
            asset_id=d.get("asset_id") or None,
            upload_id=d.get("upload_id") or None,
            playback_id=d.get("playback_id") or None,
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "owner_id": self.owner_id,
            "raw_reference": self.raw_reference,
            "playback_url": self.playback_url,
            "thumbnail_url": self.thumbnail_url,
            "lifecycle_status": self.lifecycle_status.value,
            "asset_id": self.asset_id,
            "upload_id": self.upload_id,
            "playback_id": self.playback_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class ReconcileSummary:
    scanned: int = 0
    patched: int = 0
    skipped: int = 0
    terminal: int = 0
    deferred: int = 0
    malformed: int = 0
    failed: int = 0
    dry_run: bool = False
    patched_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "patched": self.patched,
            "skipped": self.skipped,
            "terminal": self.terminal,
            "deferred": self.deferred,
            "malformed": self.malformed,
            "failed": self.failed,
            "dry_run": self.dry_run,
            "patched_ids": list(self.patched_ids),
        }
