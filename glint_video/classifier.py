"""Identifier classification.

Stored video references carry no discriminator: the same column may hold an
upload id, an asset id, a playback id or a full streaming URL. Everything
downstream works on the tagged `Identifier` produced here.

Order matters. Upload ids are long alphanumeric strings too, so the upload-id
convention is checked before the generic long-id (asset) rule and before the
canonical-URL rule; otherwise an upload id pasted into a streaming URL reads as
an already-correct playback id.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from .models import Identifier, IdentifierKind


_ALNUM = re.compile(r"^[A-Za-z0-9]+$")
_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")

CANONICAL_EXTENSION = "m3u8"


@dataclass(frozen=True)
class Conventions:
    stream_host: str = "stream.mux.com"
    image_host: str = "image.mux.com"
    upload_id_min_length: int = 50
    upload_id_prefixes: tuple[str, ...] = ()
    asset_id_min_length: int = 40
    playback_id_max_length: int = 30

    @classmethod
    def from_settings(cls, settings: object) -> "Conventions":
        return cls(
            stream_host=str(getattr(settings, "GV_STREAM_HOST", cls.stream_host)).lower(),
            image_host=str(getattr(settings, "GV_IMAGE_HOST", cls.image_host)).lower(),
            upload_id_min_length=int(getattr(settings, "GV_UPLOAD_ID_MIN_LENGTH", cls.upload_id_min_length)),
            upload_id_prefixes=tuple(getattr(settings, "upload_id_prefixes", ()) or ()),
            asset_id_min_length=int(getattr(settings, "GV_ASSET_ID_MIN_LENGTH", cls.asset_id_min_length)),
            playback_id_max_length=int(
                getattr(settings, "GV_PLAYBACK_ID_MAX_LENGTH", cls.playback_id_max_length)
            ),
        )


DEFAULT_CONVENTIONS = Conventions()


def _split_stream_url(raw: str, conventions: Conventions) -> tuple[str, str, int] | None:
    """Return (embedded id, extension, path depth) for a streaming-host URL."""

    try:
        parts = urlsplit(raw)
    except ValueError:
        return None
    if (parts.hostname or "").lower() != conventions.stream_host:
        return None
    segments = [s for s in parts.path.split("/") if s]
    if not segments:
        return None
    # Legacy renditions look like /<id>/high.mp4; the id is always the first segment.
    head = segments[0]
    if len(segments) == 1 and "." in head:
        ident, ext = head.rsplit(".", 1)
    else:
        ident = head
        last = segments[-1]
        ext = last.rsplit(".", 1)[1] if "." in last and len(segments) > 1 else ""
    return ident, ext.lower(), len(segments)


def extract_embedded_id(url: str, conventions: Conventions = DEFAULT_CONVENTIONS) -> str | None:
    """Pull the identifier out of a (possibly legacy) streaming URL."""

    s = str(url or "").strip()
    if not _SCHEME.match(s):
        return None
    split = _split_stream_url(s, conventions)
    if split is None:
        return None
    ident = split[0]
    return ident if _ALNUM.match(ident) else None


def is_canonical_url(url: str | None, conventions: Conventions = DEFAULT_CONVENTIONS) -> bool:
    s = str(url or "").strip()
    if not s.startswith("https://"):
        return False
    split = _split_stream_url(s, conventions)
    if split is None:
        return False
    ident, ext, depth = split
    return depth == 1 and ext == CANONICAL_EXTENSION and bool(_ALNUM.match(ident))


def canonical_url(playback_id: str, conventions: Conventions = DEFAULT_CONVENTIONS) -> str:
    return f"https://{conventions.stream_host}/{playback_id}.{CANONICAL_EXTENSION}"


def thumbnail_url(playback_id: str, conventions: Conventions = DEFAULT_CONVENTIONS) -> str:
    return f"https://{conventions.image_host}/{playback_id}/thumbnail.jpg"


def _looks_like_upload_id(ident: str, conventions: Conventions) -> bool:
    if any(ident.startswith(p) for p in conventions.upload_id_prefixes):
        return True
    return len(ident) >= conventions.upload_id_min_length


def classify(raw: object, conventions: Conventions = DEFAULT_CONVENTIONS) -> Identifier:
    """Classify a stored reference by shape alone. Never raises, never touches the network."""

    value = "" if raw is None else str(raw)
    s = value.strip()
    if not s:
        return Identifier(IdentifierKind.UNKNOWN, value)

    from_url = bool(_SCHEME.match(s))
    canonical = False
    if from_url:
        split = _split_stream_url(s, conventions)
        if split is None:
            return Identifier(IdentifierKind.UNKNOWN, value)
        ident, ext, depth = split
        canonical = depth == 1 and ext == CANONICAL_EXTENSION
    else:
        ident = s

    if not _ALNUM.match(ident):
        return Identifier(IdentifierKind.UNKNOWN, value)

    if _looks_like_upload_id(ident, conventions):
        return Identifier(IdentifierKind.UPLOAD_ID, value, ident)
    if canonical and len(ident) < conventions.asset_id_min_length:
        return Identifier(IdentifierKind.PLAYBACK_ID, value, ident)
    if len(ident) >= conventions.asset_id_min_length:
        return Identifier(IdentifierKind.ASSET_ID, value, ident)
    if len(ident) <= conventions.playback_id_max_length:
        return Identifier(IdentifierKind.PLAYBACK_ID, value, ident)
    return Identifier(IdentifierKind.UNKNOWN, value, ident)
