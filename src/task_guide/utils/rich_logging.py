"""Logging with session context and readable formatting."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "task_guide"


class SessionLogFormatter(logging.Formatter):
    """Formatter that prefixes records with their session context."""

    def __init__(self, component: str, use_colors: bool = True):
        super().__init__()
        self.component = component
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        session_context = ""
        if hasattr(record, "session_id"):
            session_context = f"[{record.session_id[:8]}] "

        task_context = ""
        if hasattr(record, "task_type"):
            task_context = f"[{record.task_type}] "

        step_context = ""
        if hasattr(record, "step_id"):
            step_context = f"[{record.step_id}] "

        if self.use_colors:
            level_colors = {
                "DEBUG": "\033[36m",      # Cyan
                "INFO": "\033[32m",       # Green
                "WARNING": "\033[33m",    # Yellow
                "ERROR": "\033[31m",      # Red
                "CRITICAL": "\033[35m",   # Magenta
            }
            reset = "\033[0m"
            level_color = level_colors.get(record.levelname, "")
        else:
            level_color = ""
            reset = ""

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.component}] {task_context}{session_context}{step_context}{message}"
        )


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds session context to all log messages."""

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})
        self.current_session_id: Optional[str] = None
        self.current_task_type: Optional[str] = None
        self.current_step_id: Optional[str] = None

    def set_session_context(
        self,
        session_id: Optional[str] = None,
        task_type: Optional[str] = None,
        step_id: Optional[str] = None,
    ):
        if session_id:
            self.current_session_id = session_id
        if task_type:
            self.current_task_type = task_type
        self.current_step_id = step_id

    def clear_context(self):
        self.current_session_id = None
        self.current_task_type = None
        self.current_step_id = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})

        if self.current_session_id:
            extra["session_id"] = self.current_session_id
        if self.current_task_type:
            extra["task_type"] = self.current_task_type
        if self.current_step_id:
            extra["step_id"] = self.current_step_id

        kwargs["extra"] = extra
        return msg, kwargs

    def session_started(self, session_id: str, task_type: str, version: int):
        self.set_session_context(session_id=session_id, task_type=task_type)
        self.info(f"Started session for {task_type} v{version}")

    def step_completed(self, step_id: str, next_step_id: Optional[str]):
        self.set_session_context(step_id=step_id)
        self.info(f"Step completed, next: {next_step_id or '-'}")

    def session_closed(self, status: str):
        self.info(f"Session {status}")
        self.clear_context()


def setup_logging(
    component: str = "task-guide",
    log_level: str = "INFO",
    use_colors: bool = True,
    log_file: Optional[Path] = None,
) -> ContextLogger:
    """
    Configure the package logger.

    Args:
        component: Name shown in every log line
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_colors: ANSI colours on the console (ignored when stderr is not a tty)
        log_file: Optional file that receives uncoloured records

    Returns:
        ContextLogger wrapping the package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    is_tty = sys.stderr.isatty() if hasattr(sys.stderr, "isatty") else False
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(SessionLogFormatter(component, use_colors=use_colors and is_tty))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(SessionLogFormatter(component, use_colors=False))
        logger.addHandler(file_handler)

    return ContextLogger(logger)


def get_context_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name))
