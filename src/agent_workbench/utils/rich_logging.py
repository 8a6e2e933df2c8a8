"""Logging setup plus an adapter that stamps agent, phase and task onto records."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

# Record attributes rendered as "[value] " prefixes, in this order
CONTEXT_FIELDS = ("agent_id", "phase", "task_id")

PHASE_MARKERS = {
    "creating_worktree": "🌿",
    "installing_deps": "📦",
    "researching": "🔍",
    "implementing": "⚙️",
    "committing": "💾",
    "creating_pr": "🔀",
    "warning": "⚠️",
    "done": "🏁",
}


def context_prefix(record: logging.LogRecord) -> str:
    parts = []
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value:
            parts.append(f"[{value[:8] if name == 'task_id' else value}] ")
    return "".join(parts)


class TaskLogFormatter(logging.Formatter):
    """Plain-text formatter: time, level, context prefix, message."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8s}"
        if self.use_colors and record.levelname in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelname]}{level}{self.RESET}"

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        return f"{clock} {level} {context_prefix(record)}{message}"


class _ContextRichHandler(RichHandler):
    """RichHandler that keeps the agent/phase/task prefix."""

    def render_message(self, record: logging.LogRecord, message: str):
        return super().render_message(record, f"{context_prefix(record)}{message}")


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter carrying the agent, task and phase of the run being logged.

    One instance follows a single task run; ``task_started`` binds the
    task and ``task_completed``/``task_failed`` drop it again.
    """

    def __init__(self, logger: logging.Logger, agent_id: Optional[str] = None):
        super().__init__(logger, {})
        self.context: Dict[str, str] = {}
        if agent_id:
            self.context["agent_id"] = agent_id

    def bind(self, **fields: Optional[str]) -> None:
        for name, value in fields.items():
            if value:
                self.context[name] = value

    def clear_context(self) -> None:
        """Forget task and phase; the agent stays bound."""
        self.context.pop("task_id", None)
        self.context.pop("phase", None)

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.context, **kwargs.get("extra", {})}
        return msg, kwargs

    def task_started(self, task_id: str, title: str) -> None:
        self.bind(task_id=task_id)
        self.info(f"📋 Starting task: {title}")

    def phase_change(self, phase: str) -> None:
        self.bind(phase=phase)
        self.info(f"{PHASE_MARKERS.get(phase.lower(), '▶️')} Phase: {phase}")

    def progress(self, message: str) -> None:
        self.info(f"⏳ {message}")

    def task_completed(self, duration_seconds: float) -> None:
        self.info(f"✅ Task completed in {duration_seconds:.1f}s")
        self.clear_context()

    def task_failed(self, error: str) -> None:
        self.error(f"❌ Task failed: {error}")
        self.clear_context()


def get_context_logger(name: str, agent_id: Optional[str] = None) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), agent_id)


def setup_rich_logging(
    log_level: str = "INFO",
    log_dir: Optional[Path] = None,
    logger_name: str = "agent_workbench",
) -> logging.Logger:
    """
    Configure the package logger tree.

    Interactive terminals get a RichHandler on stderr; anything else gets
    plain lines so logs stay greppable when piped.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for ``workbench.log`` (None = console only)
        logger_name: Root of the logger tree to configure

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if sys.stderr.isatty():
        console_handler: logging.Handler = _ContextRichHandler(
            console=Console(stderr=True), show_path=False, markup=False,
        )
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(TaskLogFormatter())
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "workbench.log")
        file_handler.setFormatter(TaskLogFormatter())
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
