from __future__ import annotations

import logging
from typing import Any

import httpx

from .models import AssetSnapshot, FailureReason, PlaybackIdRef, UploadSnapshot


logger = logging.getLogger(__name__)

ASSET_STATUSES = ("preparing", "ready", "errored")
UPLOAD_STATUSES = ("waiting", "asset_created", "errored", "cancelled", "timed_out")


class ProviderError(Exception):
    def __init__(self, reason: FailureReason, message: str = "", *, status_code: int | None = None):
        super().__init__(message or reason.value)
        self.reason = reason
        self.status_code = status_code


def _unwrap(payload: Any, *keys: str) -> dict[str, Any]:
    # The provider answers {"data": {...}}; the app's old backend proxy answered
    # {"success": true, "asset": {...}}. Accept both, plus the bare object.
    if not isinstance(payload, dict):
        return {}
    for k in ("data", *keys):
        inner = payload.get(k)
        if isinstance(inner, dict):
            return inner
    return payload


def parse_playback_ids(raw: Any) -> tuple[PlaybackIdRef, ...]:
    out: list[PlaybackIdRef] = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        pid = str(item.get("id") or "").strip()
        if not pid:
            continue
        out.append(PlaybackIdRef(id=pid, policy=str(item.get("policy") or "").strip().lower()))
    return tuple(out)


def parse_asset(payload: Any, fallback_id: str = "") -> AssetSnapshot:
    data = _unwrap(payload, "asset")
    status = str(data.get("status") or "").strip().lower()
    if status not in ASSET_STATUSES:
        status = "preparing"
    return AssetSnapshot(
        id=str(data.get("id") or fallback_id),
        status=status,
        playback_ids=parse_playback_ids(data.get("playback_ids")),
        upload_id=(str(data.get("upload_id")).strip() or None) if data.get("upload_id") else None,
    )


def parse_upload(payload: Any, fallback_id: str = "") -> UploadSnapshot:
    data = _unwrap(payload, "upload")
    status = str(data.get("status") or "").strip().lower()
    if status not in UPLOAD_STATUSES:
        status = "waiting"
    asset_id = str(data.get("asset_id") or "").strip() or None
    return UploadSnapshot(id=str(data.get("id") or fallback_id), status=status, asset_id=asset_id)


class ProviderClient:
    """Thin async boundary to the transcoding provider.

    One outbound request per call and no retries; retry policy belongs to the
    resolver and its cache TTLs. Every failure surfaces as `ProviderError`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token_id: str | None = None,
        token_secret: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self._auth = httpx.BasicAuth(token_id, token_secret) if token_id and token_secret else None
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: object, *, client: httpx.AsyncClient | None = None) -> "ProviderClient":
        return cls(
            str(getattr(settings, "GV_PROVIDER_BASE_URL")),
            token_id=getattr(settings, "GV_PROVIDER_TOKEN_ID", None),
            token_secret=getattr(settings, "GV_PROVIDER_TOKEN_SECRET", None),
            timeout=float(getattr(settings, "GV_PROVIDER_TIMEOUT_SEC", 10.0)),
            client=client,
        )

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        kwargs: dict[str, Any] = {"headers": {"Accept": "application/json"}, "timeout": self.timeout}
        if self._auth is not None:
            kwargs["auth"] = self._auth
        try:
            resp = await self._http().get(url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Provider timeout for %s: %s", path, exc)
            raise ProviderError(FailureReason.PROVIDER_UNAVAILABLE, f"timeout: {exc}") from exc
        except httpx.RequestError as exc:
            logger.warning("Provider transport error for %s: %s", path, exc)
            raise ProviderError(FailureReason.PROVIDER_UNAVAILABLE, f"transport: {exc}") from exc

        if resp.status_code == 404:
            raise ProviderError(FailureReason.ASSET_DELETED, "not found", status_code=404)
        if resp.status_code >= 400:
            logger.warning("Provider returned HTTP %s for %s", resp.status_code, path)
            raise ProviderError(
                FailureReason.PROVIDER_UNAVAILABLE,
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(
                FailureReason.PROVIDER_UNAVAILABLE,
                "invalid JSON from provider",
                status_code=resp.status_code,
            ) from exc

    async def fetch_asset(self, asset_id: str) -> AssetSnapshot:
        payload = await self._get_json(f"/video/v1/assets/{asset_id}")
        snap = parse_asset(payload, fallback_id=asset_id)
        logger.debug("Asset %s status=%s playback_ids=%d", asset_id, snap.status, len(snap.playback_ids))
        return snap

    async def fetch_upload(self, upload_id: str) -> UploadSnapshot:
        payload = await self._get_json(f"/video/v1/uploads/{upload_id}")
        return parse_upload(payload, fallback_id=upload_id)
