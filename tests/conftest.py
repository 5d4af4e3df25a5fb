from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest


def _ensure_project_root_on_path() -> None:
    # When running via the venv's pytest entrypoint, the CWD is not guaranteed to
    # be on sys.path. Ensure the repository root (containing `glint_video/`) is importable.
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_path()

from glint_video.models import AssetSnapshot, FailureReason, PlaybackIdRef, UploadSnapshot  # noqa: E402
from glint_video.provider import ProviderError  # noqa: E402
from glint_video.settings import Settings  # noqa: E402


# 44 / 52 character ids, shaped like the provider's.
ASSET_ID = "a1B2c3D4e5" * 4 + "f6G7"
OTHER_ASSET_ID = "z9Y8x7W6v5" * 4 + "u4T3"
UPLOAD_ID = "U" + "p9Q8r7S6t5" * 5 + "x"
PLAYBACK_ID = "PB1"


def ready_asset(asset_id: str, playback_id: str, *, upload_id: str | None = None, policy: str = "public") -> AssetSnapshot:
    return AssetSnapshot(
        id=asset_id,
        status="ready",
        playback_ids=(PlaybackIdRef(playback_id, policy),),
        upload_id=upload_id,
    )


class FakeProvider:
    """In-memory provider. Unknown ids answer like a 404."""

    def __init__(self, *, delay: float = 0.0):
        self.assets: dict[str, object] = {}
        self.uploads: dict[str, object] = {}
        self.asset_calls: list[str] = []
        self.upload_calls: list[str] = []
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def _answer(self, table: dict[str, object], key: str):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            item = table.get(key)
        finally:
            self.active -= 1
        if item is None:
            raise ProviderError(FailureReason.ASSET_DELETED, "not found", status_code=404)
        if isinstance(item, BaseException):
            raise item
        return item

    async def fetch_asset(self, asset_id: str) -> AssetSnapshot:
        self.asset_calls.append(asset_id)
        return await self._answer(self.assets, asset_id)

    async def fetch_upload(self, upload_id: str) -> UploadSnapshot:
        self.upload_calls.append(upload_id)
        return await self._answer(self.uploads, upload_id)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def provider() -> FakeProvider:
    p = FakeProvider()
    p.assets[ASSET_ID] = ready_asset(ASSET_ID, PLAYBACK_ID)
    return p


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        GV_DB_PATH=tmp_path / "glint_video.db",
        GV_API_CORS_ALLOW_ALL=False,
        GV_API_LOG_DIR=tmp_path / "logs",
        GV_PROVIDER_TOKEN_ID=None,
        GV_PROVIDER_TOKEN_SECRET=None,
        GV_SEED_FILE=None,
    )
