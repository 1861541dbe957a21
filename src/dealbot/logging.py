"""
Structured logging for the deal evaluation core.

Provides:
- Context variables for deal_id, run_id and persona (using contextvars)
- JSONFormatter for machine-readable log files
- ContextRichHandler for console output with a context prefix
- ContextLogger wrapper that accepts keyword fields on every call
- setup_logging() and get_logger() under the "dealbot" namespace
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import orjson
from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

ROOT_LOGGER = "dealbot"

_deal_id_var: ContextVar[str | None] = ContextVar("deal_id", default=None)
_run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)
_persona_var: ContextVar[str | None] = ContextVar("persona", default=None)


def get_deal_id() -> str | None:
    """Get the current deal ID from context."""
    return _deal_id_var.get()


def get_run_id() -> str | None:
    """Get the current run ID from context."""
    return _run_id_var.get()


def get_persona() -> str | None:
    """Get the current persona ID from context."""
    return _persona_var.get()


def _current_context() -> dict[str, str]:
    ctx: dict[str, str] = {}
    deal_id = get_deal_id()
    run_id = get_run_id()
    persona = get_persona()
    if deal_id:
        ctx["deal_id"] = deal_id
    if run_id:
        ctx["run_id"] = run_id
    if persona:
        ctx["persona"] = persona
    return ctx


@contextmanager
def log_context(
    deal_id: str | None = None,
    run_id: str | None = None,
    persona: str | None = None,
) -> Generator[None, None, None]:
    """Scope logging context for the duration of a block.

    Args:
        deal_id: Deal being processed.
        run_id: Run being driven.
        persona: Persona unit currently executing.

    Yields:
        None. Values left as None keep whatever the enclosing scope set.
    """
    tokens = []
    try:
        if deal_id is not None:
            tokens.append((_deal_id_var, _deal_id_var.set(deal_id)))
        if run_id is not None:
            tokens.append((_run_id_var, _run_id_var.set(run_id)))
        if persona is not None:
            tokens.append((_persona_var, _persona_var.set(persona)))
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """JSON Lines formatter for log files."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_current_context(),
        }
        if hasattr(record, "extra"):
            log_obj["extra"] = record.extra
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(log_obj, default=str).decode()


class ContextRichHandler(RichHandler):
    """Rich handler that prefixes the level with deal, run and persona."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)

        parts: list[str] = []
        deal_id = get_deal_id()
        run_id = get_run_id()
        persona = get_persona()
        if deal_id:
            parts.append(f"[dim]{deal_id.split('_')[-1][:8]}[/dim]")
        if run_id:
            parts.append(f"[cyan]{run_id.split('_')[-1][:8]}[/cyan]")
        if persona:
            parts.append(f"[magenta]{persona}[/magenta]")

        if parts:
            return Text.from_markup(f"{level_text} {' '.join(parts)}")
        return level_text


class ContextLogger:
    """Logger wrapper that folds keyword arguments into structured extras."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: bool = False,
        **kwargs: Any,
    ) -> None:
        extra = kwargs.pop("extra", {})
        extra.update(_current_context())
        for key in list(kwargs.keys()):
            if key not in ("stack_info", "stacklevel"):
                extra[key] = kwargs.pop(key)
        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log at error level with the active traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)


_console: Console | None = None
_setup_done: bool = False


def get_console() -> Console:
    """Get the shared stderr console."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the dealbot logger tree.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional JSON Lines log file. Receives every level.
        console_output: Whether to attach the rich console handler.
    """
    global _setup_done

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)

    if console_output:
        rich_handler = ContextRichHandler(
            console=get_console(),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=True,
        )
        rich_handler.setLevel(getattr(logging, log_level.upper()))
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False

    for noisy_logger in ["httpx", "httpcore", "aiosqlite", "asyncio"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger.

    Args:
        name: Logger name (usually __name__).

    Returns:
        ContextLogger wrapping a logger under the dealbot namespace.
    """
    if not _setup_done:
        setup_logging()

    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"

    return ContextLogger(logging.getLogger(name))
