# inkpilot/logging_utils.py
from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Any

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s [%(session)s]: %(message)s"
_TEXT_DATEFMT = "%H:%M:%S"

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", (), None).__dict__
) | {"message", "asctime", "session"}


def _resolve_log_level(value: str | int | None) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return getattr(logging, value.strip().upper(), logging.ERROR)
    return logging.ERROR


def _env_flag(name: str) -> bool:
    return os.getenv(name, "0").lower() in ("1", "true", "yes")


class _SessionFilter(logging.Filter):
    """Guarantee ``record.session`` so formatters can always render it."""

    def filter(self, record: logging.LogRecord) -> bool:
        sid = getattr(record, "session", None)
        record.session = str(sid)[:8] if sid else "-"
        return True


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "session": getattr(record, "session", "-"),
            "msg": record.getMessage(),
        }
        extras = {
            k: v
            for k, v in record.__dict__.items()
            if not k.startswith("_") and k not in _STANDARD_ATTRS
        }
        payload.update(json.loads(json.dumps(extras, default=str)))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _make_formatter(json_logs: bool) -> logging.Formatter:
    if json_logs:
        return _JsonFormatter()
    return logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_TEXT_DATEFMT)


def _install_handler(root: logging.Logger, json_logs: bool) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(_SessionFilter())
    handler.setFormatter(_make_formatter(json_logs))
    handler._inkpilot = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def get_logger(
    name: str,
    level: str | int | None = None,
    json_logs: bool | None = None,
) -> logging.Logger:
    """
    Create/reuse a logger under the shared root configuration.

    The root logger is configured once (idempotent) from INKPILOT_LOG_LEVEL
    and INKPILOT_LOG_JSON so every ``inkpilot.*`` logger shares one handler.
    Pass ``extra={"session": session_id}`` to tag a line with its session.
    ``level`` and ``json_logs`` override the env defaults afterwards.
    """
    logger = logging.getLogger(name)

    root = logging.getLogger()
    if not getattr(root, "_configured_by_inkpilot", False):
        root.setLevel(_resolve_log_level(os.getenv("INKPILOT_LOG_LEVEL")))
        if not root.handlers:
            _install_handler(root, _env_flag("INKPILOT_LOG_JSON"))
        root._configured_by_inkpilot = True  # type: ignore[attr-defined]

    if level is not None:
        logger.setLevel(_resolve_log_level(level))
    if json_logs is not None:
        for h in root.handlers:
            if getattr(h, "_inkpilot", False):
                h.setFormatter(_make_formatter(json_logs))
    return logger
