"""
KitForge Structured Logging
Centralized loguru configuration shared by the recolor pipeline.
"""
import sys
from typing import Dict, Any, Optional

from loguru import logger

from app.config import config


class StructuredLogger:
    """Structured logger that binds request context onto loguru records."""

    def __init__(self, level: Optional[str] = None):
        self._level = level or config.LOG_LEVEL
        self._configure_logger()

    def _configure_logger(self):
        logger.remove()
        logger.add(
            sys.stdout,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message} | {extra}",
            level=self._level,
            serialize=False  # Set to True for JSON output
        )

    def _log(self, level: str, message: str, extra: Optional[Dict[str, Any]]):
        target = logger.bind(**extra) if extra else logger
        target.log(level, message)

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log("INFO", message, extra)

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log("WARNING", message, extra)

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log("ERROR", message, extra)

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._log("DEBUG", message, extra)

    def stage(self, request_id: str, stage: str, duration_ms: float, **fields):
        """Log completion of one pipeline stage with its timing."""
        payload = {"request_id": request_id, "stage": stage, "duration_ms": round(duration_ms, 2)}
        payload.update(fields)
        self._log("DEBUG", f"[{request_id}] {stage} done", payload)


# Global logger instance
_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get or create global logger instance."""
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger
