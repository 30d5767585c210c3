from __future__ import annotations

import logging
import sys
import threading
from typing import Any, Protocol, runtime_checkable

import structlog
from rich.logging import RichHandler
from structlog.contextvars import bind_contextvars, merge_contextvars

# chatty libraries whose INFO lines drown the run output
_QUIET_LOGGERS = ("httpx", "httpcore")

_lock = threading.Lock()
_configured: tuple[str, str] | None = None


@runtime_checkable
class ILogger(Protocol):
    def debug(self, event: str, **kw: Any) -> Any: ...
    def info(self, event: str, **kw: Any) -> Any: ...
    def warning(self, event: str, **kw: Any) -> Any: ...
    def error(self, event: str, **kw: Any) -> Any: ...
    def exception(self, event: str, **kw: Any) -> Any: ...
    def bind(self, **kw: Any) -> "ILogger": ...


def _add_thread(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # actions of one stage log from pool threads
    name = threading.current_thread().name
    if name != "MainThread":
        event_dict.setdefault("thread", name)
    return event_dict


def _handler(fmt: str) -> logging.Handler:
    if fmt == "json":
        return logging.StreamHandler(stream=sys.stderr)
    return RichHandler(rich_tracebacks=True, markup=False, show_time=False, show_path=False)


def configure_logging(*, level: str = "INFO", fmt: str = "console", force: bool = False) -> None:
    """
    Route structlog through stdlib logging.

    The first call wins; later calls are no-ops unless `force` is set, so
    library code can ask for logging without undoing the CLI setup.
    """
    global _configured
    lvl = level.upper()
    with _lock:
        if _configured is not None and not force:
            return

        handler = _handler(fmt)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root = logging.getLogger()
        root.handlers.clear()
        root.addHandler(handler)
        root.setLevel(lvl)
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(max(logging.WARNING, root.level))

        renderer: Any = (
            structlog.processors.JSONRenderer()
            if fmt == "json"
            else structlog.processors.KeyValueRenderer(
                sort_keys=True, key_order=["event", "run_id", "stage", "action"], drop_missing=True
            )
        )
        structlog.configure(
            processors=[
                merge_contextvars,
                structlog.processors.add_log_level,
                _add_thread,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.format_exc_info,
                renderer,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(lvl),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )
        _configured = (lvl, fmt)


def get_logger(name: str = "user_pipeline") -> Any:
    return structlog.get_logger(name)


def bind(**values: Any) -> None:
    """Attach values to every log line of the current context (run id, command)."""
    bind_contextvars(**values)
