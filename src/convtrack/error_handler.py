"""
Centralized error handling and logging for the conversion tracking core.

The ErrorHandler singleton normalizes exceptions into BaseAppError instances,
writes them to a rotating log file and turns them into the messages stored on
a failed job.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
import threading
import traceback
from pathlib import Path
from typing import Any, ClassVar

from PySide6.QtCore import QObject, Signal

from .config import get_log_dir
from .errors import BaseAppError, from_exception

_SENSITIVE_KEYS = ("password", "token", "key", "secret")
_MAX_CONTEXT_ITEMS = 20
_MAX_VALUE_LENGTH = 200

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _AppCodeFilter(logging.Filter):
    """Provide a default app_code so records logged without one still format."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "app_code"):
            record.app_code = "-"
        return True


class ErrorHandler(QObject):
    """
    Centralized error handler with logging and user message translation.

    Signals:
        errorOccurred(object): The normalized BaseAppError of every handled exception
    """

    errorOccurred = Signal(object)

    _instance: ClassVar[ErrorHandler | None] = None
    _logger: ClassVar[logging.Logger | None] = None

    def __new__(cls) -> ErrorHandler:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return

        super().__init__()
        self._initialized = True
        self._original_excepthook = sys.excepthook
        self._original_threading_excepthook = getattr(threading, "excepthook", None)

        self._setup_logging()

    def capture(self, exception: Exception, context: dict[str, Any] | None = None) -> BaseAppError:
        """
        Capture and normalize an exception into a BaseAppError.

        Args:
            exception: The exception to capture
            context: Optional context information, sanitized before it is attached

        Returns:
            BaseAppError with normalized metadata
        """
        safe_context = self._sanitize_context(context or {})
        app_error = from_exception(exception, safe_context)

        if not app_error.technical_message:
            app_error.technical_message = f"{type(exception).__name__}: {exception}"

        if "traceback" not in app_error.context:
            tb_str = traceback.format_exc()
            if tb_str == "NoneType: None\n":
                tb_str = f"{type(exception).__name__}: {exception}\n"
            app_error.context["traceback"] = tb_str

        return app_error

    def handle(self, exception: Exception, context: dict[str, Any] | None = None) -> BaseAppError:
        """
        Handle an exception by capturing, logging and emitting errorOccurred.

        Args:
            exception: The exception to handle
            context: Optional context information

        Returns:
            BaseAppError for further processing
        """
        if isinstance(exception, SystemExit | KeyboardInterrupt):
            raise exception

        app_error = self.capture(exception, context)

        if self._logger:
            self._logger.error(
                f"[{app_error.code.value}] {app_error.user_message}",
                extra={
                    "app_code": app_error.code.value,
                    "error_type": app_error.type.value,
                    "severity": app_error.severity.value,
                    "retriable": app_error.retriable,
                },
                exc_info=exception,
            )

        self.errorOccurred.emit(app_error)
        return app_error

    def to_user_message(self, app_error: BaseAppError) -> str:
        """
        Generate a concise, user-friendly message from a BaseAppError.

        Retriable errors get a hint that the conversion can be started again.
        """
        message = app_error.user_message
        if app_error.retriable:
            message += " You can try again."
        return message

    def _setup_logging(self, log_dir: Path | None = None) -> None:
        """Set up rotating file logging in the app data directory."""
        try:
            logs_dir = log_dir or get_log_dir()
            logs_dir.mkdir(parents=True, exist_ok=True)

            ErrorHandler._logger = logging.getLogger("convtrack.errors")
            ErrorHandler._logger.setLevel(logging.DEBUG)
            ErrorHandler._logger.propagate = False

            if not ErrorHandler._logger.handlers:
                file_handler = logging.handlers.RotatingFileHandler(
                    logs_dir / "app.log",
                    maxBytes=5_242_880,  # 5MB
                    backupCount=5,
                    encoding="utf-8",
                )
                formatter = logging.Formatter(
                    "%(asctime)s | %(levelname)s | %(name)s | code=%(app_code)s | %(message)s",
                    datefmt=LOG_DATE_FORMAT,
                )
                file_handler.setFormatter(formatter)
                file_handler.addFilter(_AppCodeFilter())
                ErrorHandler._logger.addHandler(file_handler)

                if __debug__:
                    console_handler = logging.StreamHandler()
                    console_handler.setFormatter(formatter)
                    console_handler.setLevel(logging.WARNING)
                    console_handler.addFilter(_AppCodeFilter())
                    ErrorHandler._logger.addHandler(console_handler)

        except Exception as e:
            logging.basicConfig(level=logging.ERROR)
            logging.error(f"Failed to setup error logging: {e}")

    def _sanitize_context(self, context: dict[str, Any]) -> dict[str, Any]:
        """Redact sensitive keys and truncate long or numerous context values."""
        safe_context: dict[str, Any] = {}

        for item_count, (key, value) in enumerate(context.items()):
            if item_count >= _MAX_CONTEXT_ITEMS:
                safe_context["..."] = f"({len(context) - _MAX_CONTEXT_ITEMS} more items truncated)"
                break

            if any(sensitive in key.lower() for sensitive in _SENSITIVE_KEYS):
                safe_context[key] = "[REDACTED]"
            elif isinstance(value, str):
                if len(value) > _MAX_VALUE_LENGTH:
                    value = value[:_MAX_VALUE_LENGTH] + "..."
                safe_context[key] = value
            else:
                try:
                    safe_context[key] = repr(value)[:_MAX_VALUE_LENGTH]
                except Exception:
                    safe_context[key] = "[REPR_FAILED]"

        return safe_context

    def install_hooks(self) -> None:
        """Route unhandled exceptions from the main and worker threads through handle()."""

        def exception_hook(exc_type: type[BaseException], exc_value: BaseException, exc_traceback: Any) -> None:
            if issubclass(exc_type, KeyboardInterrupt):
                self._original_excepthook(exc_type, exc_value, exc_traceback)
                return
            try:
                if isinstance(exc_value, Exception):
                    self.handle(exc_value, {"source": "sys.excepthook"})
            except Exception:
                self._original_excepthook(exc_type, exc_value, exc_traceback)

        sys.excepthook = exception_hook

        def threading_exception_hook(args: threading.ExceptHookArgs) -> None:
            try:
                if isinstance(args.exc_value, Exception):
                    self.handle(
                        args.exc_value,
                        {"source": "threading.excepthook", "thread": args.thread.name if args.thread else "unknown"},
                    )
            except Exception:
                if self._original_threading_excepthook:
                    self._original_threading_excepthook(args)

        threading.excepthook = threading_exception_hook

    def restore_hooks(self) -> None:
        """Restore original exception hooks."""
        sys.excepthook = self._original_excepthook
        if self._original_threading_excepthook:
            threading.excepthook = self._original_threading_excepthook


def get_error_handler() -> ErrorHandler:
    """Get the singleton ErrorHandler instance."""
    return ErrorHandler()


def setup_error_handling() -> ErrorHandler:
    """
    Set up global error handling for the application.

    Returns:
        The configured ErrorHandler instance with exception hooks installed
    """
    handler = get_error_handler()
    handler.install_hooks()
    return handler


def init_logging(level: int | str = logging.INFO, log_file: str | Path | None = None) -> None:
    """
    Initialize logging configuration.

    Args:
        level: Root log level, as a logging constant or level name
        log_file: Optional extra file receiving all records, in addition to the console
    """
    get_error_handler()

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, handlers=handlers)
