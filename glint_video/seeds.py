"""Static fallback mappings loaded into the resolution cache at startup.

The file is configuration, not logic: no entries ship with the code. Format::

    mappings:
      <upload id or asset id>: <playback id>

A flat top-level mapping is accepted too.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import yaml

from .cache import ResolutionCache
from .classifier import DEFAULT_CONVENTIONS, Conventions, canonical_url
from .models import ResolutionResult


logger = logging.getLogger(__name__)

_ALNUM = re.compile(r"^[A-Za-z0-9]+$")


class SeedFileError(ValueError):
    pass


def parse_seed_mapping(data: object, conventions: Conventions = DEFAULT_CONVENTIONS) -> dict[str, ResolutionResult]:
    if data is None:
        return {}
    if isinstance(data, dict) and isinstance(data.get("mappings"), dict):
        data = data["mappings"]
    if not isinstance(data, dict):
        raise SeedFileError("seed file must be a mapping of reference -> playback id")

    out: dict[str, ResolutionResult] = {}
    for raw_key, raw_val in data.items():
        key = str(raw_key or "").strip()
        playback_id = str(raw_val or "").strip()
        if not key or not _ALNUM.match(playback_id):
            logger.warning("Skipping invalid seed entry %r -> %r", raw_key, raw_val)
            continue
        out[key] = ResolutionResult.resolved(playback_id, canonical_url(playback_id, conventions))
    return out


def load_seed_file(path: Path, conventions: Conventions = DEFAULT_CONVENTIONS) -> dict[str, ResolutionResult]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise SeedFileError(f"cannot read seed file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SeedFileError(f"invalid YAML in seed file {path}: {exc}") from exc
    return parse_seed_mapping(data, conventions)


def seed_cache(cache: ResolutionCache, path: Path | None, conventions: Conventions = DEFAULT_CONVENTIONS) -> int:
    if path is None:
        return 0
    entries = load_seed_file(path, conventions)
    n = cache.seed(entries)
    logger.info("Seeded %d fallback mapping(s) from %s", n, path)
    return n
