from __future__ import annotations

import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Loggers whose records also land in the events file: every write decided by a
# webhook delivery or a reconcile pass, and the store's own audit lines.
EVENT_LOGGERS = (
    "glint_video.webhooks",
    "glint_video.reconcile",
    "glint_video.repositories",
)

_TAG = "_glint_video_channel"


def _level(name: object, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(name or "").upper().strip())
    return level if isinstance(level, int) else default


def parse_module_levels(raw: str | None) -> dict[str, int]:
    """Parse `GV_LOG_LEVELS`, e.g. ``"resolver=DEBUG, webhooks=WARNING"``.

    Bare names are glint_video submodules; dotted names are taken as-is.
    Raises ValueError on a malformed entry or an unknown level.
    """

    out: dict[str, int] = {}
    for part in str(raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, level_name = part.partition("=")
        name, level_name = name.strip(), level_name.strip().upper()
        if not sep or not name or not level_name:
            raise ValueError(f"bad log level entry {part!r} (expected module=LEVEL)")
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            raise ValueError(f"unknown log level {level_name!r} for {name!r}")
        if name != "glint_video" and "." not in name:
            name = f"glint_video.{name}"
        out[name] = level
    return out


def apply_module_levels(settings: object) -> dict[str, int]:
    levels = parse_module_levels(getattr(settings, "GV_LOG_LEVELS", ""))
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)
    return levels


def _resolve_log_dir(settings: object) -> Path:
    """Absolute GV_API_LOG_DIR as given; relative ones sit under the working directory."""

    raw = getattr(settings, "GV_API_LOG_DIR", Path("_logs"))
    p = raw if isinstance(raw, Path) else Path(str(raw))
    return p if p.is_absolute() else Path.cwd() / p


def _rotating(settings: object, path: Path, level: int) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        filename=str(path),
        when="midnight",
        interval=1,
        backupCount=max(0, int(getattr(settings, "GV_API_LOG_BACKUP_COUNT", 14) or 0)),
        encoding="utf-8",
        utc=False,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _install(logger: logging.Logger, channel: str, handler: logging.Handler) -> None:
    # One handler per channel per logger, however many times setup runs.
    for old in [h for h in logger.handlers if getattr(h, _TAG, None) == channel]:
        logger.removeHandler(old)
        old.close()
    setattr(handler, _TAG, channel)
    logger.addHandler(handler)


def attach_events_channel(settings: object) -> Path | None:
    """Copy webhook / reconcile / store records into their own rotating file.

    Returns the file path, or None when `GV_LOG_EVENTS` is off. The loggers keep
    propagating, so the same lines still reach the main log.
    """

    if not bool(getattr(settings, "GV_LOG_EVENTS", True)):
        return None

    log_dir = _resolve_log_dir(settings)
    log_dir.mkdir(parents=True, exist_ok=True)
    events_file = log_dir / "glint_video_events.log"

    handler = _rotating(settings, events_file, logging.INFO)
    for name in EVENT_LOGGERS:
        _install(logging.getLogger(name), "events", handler)
    return events_file


def setup_api_logging(settings: object) -> Path:
    """Configure Python + uvicorn logging for the API server.

    Returns the resolved main log file path.

    - `glint_video_api.log`: everything at `GV_API_LOG_LEVEL`, rotated daily at
      midnight, keeping `GV_API_LOG_BACKUP_COUNT` files.
    - `glint_video_events.log`: webhook / reconcile / store writes (see
      `attach_events_channel`).
    - `GV_LOG_LEVELS` overrides individual glint_video modules.

    Safe to call multiple times (it resets handlers).
    """

    log_dir = _resolve_log_dir(settings)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "glint_video_api.log"

    level_name = str(getattr(settings, "GV_API_LOG_LEVEL", "INFO") or "INFO").upper().strip()
    level = _level(level_name)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Reset root handlers so we don't duplicate logs on reload / repeated starts.
    root = logging.getLogger()
    for old in root.handlers:
        if getattr(old, _TAG, None) == "api":
            old.close()
    root.handlers = []
    root.setLevel(level)
    _install(root, "api", _rotating(settings, log_file, level))
    root.addHandler(console_handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.setLevel(level)
        lg.propagate = True

    # httpx logs every request at INFO; that is one line per provider lookup.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    access = bool(getattr(settings, "GV_API_LOG_ACCESS", False))
    if not access:
        logging.getLogger("uvicorn.access").disabled = True

    events_file = attach_events_channel(settings)
    overrides = apply_module_levels(settings)

    logging.getLogger("glint_video").info(
        "glint_video API logging enabled (file=%s, events=%s, level=%s, access=%s, overrides=%s)",
        os.fspath(log_file),
        os.fspath(events_file) if events_file else "off",
        level_name,
        access,
        ",".join(f"{k}={logging.getLevelName(v)}" for k, v in overrides.items()) or "none",
    )

    return log_file


def setup_cli_logging(settings: object, *, console: Console | None = None) -> Path | None:
    """Logging for one-shot CLI commands.

    Warnings go to stderr through rich (stdout stays the command's own output);
    the events file still records every write the command makes. Returns the
    events file path, or None when the channel is off.
    """

    level = _level(getattr(settings, "GV_CLI_LOG_LEVEL", "WARNING"), logging.WARNING)

    handler = RichHandler(
        console=console or Console(stderr=True),
        level=level,
        show_path=False,
        rich_tracebacks=False,
    )
    package = logging.getLogger("glint_video")
    _install(package, "cli", handler)

    events_file = attach_events_channel(settings)
    # The events file wants INFO even when the console shows only warnings.
    package.setLevel(min(level, logging.INFO) if events_file else level)
    apply_module_levels(settings)
    return events_file
