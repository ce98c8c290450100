# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
provkit.core.log
================

Structured logging for the coordinator and its adapters:
- Run context propagation via contextvars (run_id, fingerprint, holder, ordinal).
- JSON formatter for CI log streams; human formatter for local runs.
- LoggerAdapter that accepts arbitrary keyword fields.
- Helpers to enable/disable stdout logging, set levels and suppress best-effort errors.

The library logger is silent by default; the CLI and tests opt in.
"""

import contextvars
import json
import logging
import os
import sys
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, ClassVar, Final, TextIO

__all__ = [
    "bind_context",
    "configure_from_env",
    "disable_stdout_logging",
    "enable_stdout_logging",
    "get_logger",
    "log_context",
    "set_level",
    "swallow",
    "warn_once",
]

_ROOT: Final[str] = "provkit"
_ENV_PREFIX: Final[str] = "PROVKIT_LOG_"

# Context keys surfaced by the human formatter, in display order.
_HUMAN_KEYS: Final[tuple[str, ...]] = ("run_id", "fingerprint", "ordinal", "holder")

# ---------- Context ----------

_log_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar("provkit_log_ctx", default=None)


def _ctx_copy() -> dict[str, Any]:
    ctx = _log_context.get()
    return dict(ctx) if ctx else {}


def bind_context(**fields: Any) -> None:
    """Merge fields into the current structured log context (None values are dropped)."""
    ctx = _ctx_copy()
    ctx.update({k: v for k, v in fields.items() if v is not None})
    _log_context.set(ctx)


@contextmanager
def log_context(**fields: Any):
    """Temporarily add fields to the log context; the previous context is restored on exit."""
    token = _log_context.set({**_ctx_copy(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _log_context.reset(token)


# ---------- Formatters ----------

_STD_ATTRS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "asctime",
    }
)


def _iso_utc_ms(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, tz=UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _exc_tuple(exc_info: Any) -> tuple | None:
    if not exc_info:
        return None
    if isinstance(exc_info, BaseException):
        return (type(exc_info), exc_info, exc_info.__traceback__)
    if exc_info is True:
        return sys.exc_info()
    if isinstance(exc_info, tuple):
        return exc_info
    return None


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      - ts, level, logger, message
      - current log context (run_id, fingerprint, ...)
      - extra=... fields
      - error {type, message[, stack]} when exception info is attached
    """

    def __init__(self, *, include_stack: bool = False) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": _iso_utc_ms(record.created),
            "level": record.levelname,
            "logger": record.name,
        }

        msg = record.getMessage()
        if msg:
            out["message"] = msg

        ctx = _log_context.get()
        if ctx:
            out.update(ctx)

        for k, v in record.__dict__.items():
            if k in _STD_ATTRS or k in out:
                continue
            out[k] = v

        exc = _exc_tuple(record.exc_info)
        if exc:
            err = out.setdefault("error", {})
            err["type"] = exc[0].__name__ if exc[0] else "Exception"
            err["message"] = str(exc[1]) if exc[1] else None
            if self.include_stack:
                err["stack"] = self.formatException(exc)
        elif record.exc_text:
            out.setdefault("error", {})["stack"] = record.exc_text

        return json.dumps(out, ensure_ascii=False, separators=(",", ":"), default=str)


class HumanFormatter(logging.Formatter):
    """Compact human-friendly formatter for local debugging."""

    default_time_format = "%Y-%m-%d %H:%M:%S"
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:
        s = f"{self.formatTime(record)} {record.levelname:<5} {record.name}: {record.getMessage()}"
        ctx = _log_context.get()
        if ctx:
            compact = {k: ctx.get(k) for k in _HUMAN_KEYS if ctx.get(k) is not None}
            if compact:
                s += "  [" + ", ".join(f"{k}={v}" for k, v in compact.items()) + "]"
        exc = _exc_tuple(record.exc_info)
        if exc:
            s += "\n" + self.formatException(exc)
        return s


# ---------- Filters / adapter ----------


class ContextFilter(logging.Filter):
    """Copy the current log context onto the LogRecord for downstream handlers."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _log_context.get()
        if ctx:
            for k, v in ctx.items():
                record.__dict__.setdefault(k, v)
        return True


class _LevelBand(logging.Filter):
    def __init__(self, *, lo: int = logging.NOTSET, hi: int = logging.CRITICAL) -> None:
        super().__init__()
        self.lo = lo
        self.hi = hi

    def filter(self, record: logging.LogRecord) -> bool:
        return self.lo <= record.levelno <= self.hi


class _KwExtraAdapter(logging.LoggerAdapter):
    """
    Logger adapter that moves unknown kwargs into `extra={...}`:

        log.info("mutex.acquired", event="mutex.acquired", key=key, waited_ms=12)
    """

    _allowed_passthrough: ClassVar[frozenset[str]] = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

    def process(self, msg, kwargs):
        extra = kwargs.get("extra")
        if not isinstance(extra, dict):
            extra = {}
        for k in [k for k in kwargs if k not in self._allowed_passthrough]:
            v = kwargs.pop(k)
            key = f"field_{k}" if k in _STD_ATTRS else k
            extra.setdefault(key, v)
        kwargs["extra"] = extra
        return msg, kwargs


_WARN_ONCE_SEEN: set[str] = set()
_WARN_ONCE_LOCK = threading.Lock()


def _adapt(logger: logging.Logger | logging.LoggerAdapter) -> logging.LoggerAdapter:
    return logger if isinstance(logger, logging.LoggerAdapter) else _KwExtraAdapter(logger, {})


def warn_once(
    logger: logging.Logger | logging.LoggerAdapter,
    code: str,
    msg: str,
    *,
    level: int = logging.WARNING,
    **extra: Any,
) -> None:
    """Log a message only once per process for the given code."""
    with _WARN_ONCE_LOCK:
        if code in _WARN_ONCE_SEEN:
            return
        _WARN_ONCE_SEEN.add(code)
    _adapt(logger).log(level, msg, code=code, **extra)


# ---------- Public configuration API ----------

_configured = False
_stdout_handler_key = "_provkit_stdout_handler"
_stderr_handler_key = "_provkit_stderr_handler"


def _bootstrap_minimal() -> None:
    global _configured
    if _configured:
        return
    lg = logging.getLogger(_ROOT)
    lg.setLevel(logging.DEBUG)
    if not any(isinstance(h, logging.NullHandler) for h in lg.handlers):
        lg.addHandler(logging.NullHandler())
    if not any(isinstance(f, ContextFilter) for f in lg.filters):
        lg.addFilter(ContextFilter())
    _configured = True


def get_logger(name: str | None = None) -> logging.LoggerAdapter:
    """Return a `provkit.<name>` logger adapter that accepts arbitrary keyword fields."""
    _bootstrap_minimal()
    base = logging.getLogger(_ROOT)
    return _KwExtraAdapter(base.getChild(name) if name else base, {})


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    val = getattr(logging, str(level).upper(), None)
    if isinstance(val, int):
        return val
    raise ValueError(f"Invalid level name: {level!r}")


def set_level(level: int | str) -> None:
    logging.getLogger(_ROOT).setLevel(_resolve_level(level))


def enable_stdout_logging(
    *,
    level: int | str = logging.DEBUG,
    json_output: bool = True,
    include_stack: bool = False,
    pretty: bool = False,
    route_errors_to_stderr: bool = False,
    stream: TextIO | None = None,
) -> None:
    """
    Attach stream handlers.

    - pretty=True -> HumanFormatter, otherwise JSON (or plain text with json_output=False)
    - route_errors_to_stderr=True -> ERROR+ to stderr, the rest to `stream`
    - stream defaults to stdout; pass sys.stderr when stdout carries program output
    """
    out = stream if stream is not None else sys.stdout
    lvl = _resolve_level(level)
    _bootstrap_minimal()
    lg = logging.getLogger(_ROOT)
    disable_stdout_logging()

    fmt: logging.Formatter
    if pretty:
        fmt = HumanFormatter()
    elif json_output:
        fmt = JsonFormatter(include_stack=include_stack)
    else:
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def _handler(dest, key: str, band: _LevelBand | None, min_level: int) -> None:
        h = logging.StreamHandler(dest)
        h.set_name(key)
        h.setLevel(min_level)
        if band is not None:
            h.addFilter(band)
        h.setFormatter(fmt)
        lg.addHandler(h)

    if route_errors_to_stderr:
        _handler(out, _stdout_handler_key, _LevelBand(hi=logging.WARNING), lvl)
        _handler(sys.stderr, _stderr_handler_key, _LevelBand(lo=logging.ERROR), max(lvl, logging.ERROR))
    else:
        _handler(out, _stdout_handler_key, None, lvl)


def disable_stdout_logging() -> None:
    lg = logging.getLogger(_ROOT)
    for h in list(lg.handlers):
        if h.get_name() in (_stdout_handler_key, _stderr_handler_key):
            lg.removeHandler(h)


def _env_flag(name: str) -> bool:
    return os.getenv(_ENV_PREFIX + name, "").lower() in ("1", "true", "yes", "on")


def configure_from_env(*, stream: TextIO | None = None) -> None:
    """
    `stream` receives the log lines (stdout by default).

    Env:
      - PROVKIT_LOG_STDOUT=1|true
      - PROVKIT_LOG_LEVEL=DEBUG|INFO|...
      - PROVKIT_LOG_PRETTY=1
      - PROVKIT_LOG_STACK=1
    """
    level = os.getenv(_ENV_PREFIX + "LEVEL", "INFO")
    pretty = _env_flag("PRETTY")

    _bootstrap_minimal()
    set_level(level)

    if _env_flag("STDOUT"):
        enable_stdout_logging(
            level=level,
            json_output=not pretty,
            include_stack=_env_flag("STACK"),
            pretty=pretty,
            stream=stream,
        )
    else:
        disable_stdout_logging()


@contextmanager
def swallow(
    *,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    level: int = logging.DEBUG,
    code: str,
    msg: str | None = None,
    reraise: bool = False,
    extra: Mapping[str, Any] | None = None,
    expected: bool = True,
):
    """
    Replace `try/except: pass` with structured logging.

        with swallow(logger=log, code="mutex.release", msg="release failed", level=logging.WARNING):
            await backend.release(key, token=token)
    """
    adapter = _adapt(logger or get_logger("swallow"))
    try:
        yield
    except Exception:
        payload: dict[str, Any] = {"code": code, "expected": expected}
        if extra:
            payload.update(dict(extra))
        adapter.log(level, msg or "Suppressed exception", exc_info=True, **payload)
        if reraise:
            raise


_bootstrap_minimal()
