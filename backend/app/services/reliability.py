"""
KitForge Reliability & Timeout Management
Wall-clock budgets for pipeline runs. There is no retry or degradation here:
a recolor either publishes a validated image or fails with a typed error.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

from app.config import config
from app.errors import RecolorTimeoutError
from app.utils.logging import get_logger


class TimeoutManager:
    """Manages timeouts (milliseconds) for named operations."""

    def __init__(self, default_timeout_ms: Optional[int] = None):
        self.default_timeout_ms = default_timeout_ms or config.TIMEOUT_TOTAL_MS
        self.timeouts: Dict[str, int] = {
            "recolor": self.default_timeout_ms,
            "colorway": self.default_timeout_ms,
        }
        self.logger = get_logger()

    def budget_ms(self, operation: str, custom_timeout_ms: Optional[int] = None) -> int:
        return custom_timeout_ms or self.timeouts.get(operation, self.default_timeout_ms)

    @asynccontextmanager
    async def timeout(self, operation: str, custom_timeout_ms: Optional[int] = None):
        """
        Bound the enclosed block; in-flight awaits are cancelled on expiry.

        Raises:
            RecolorTimeoutError: when the budget is exceeded
        """
        budget = self.budget_ms(operation, custom_timeout_ms)
        try:
            async with asyncio.timeout(budget / 1000.0):
                yield
        except asyncio.TimeoutError:
            self.logger.error(f"Timeout in {operation} after {budget}ms", extra={"operation": operation})
            raise RecolorTimeoutError(
                f"Operation {operation} timed out after {budget}ms",
                {"operation": operation, "timeout_ms": budget},
            ) from None
