"""预占倒计时

剩余时间每次都由服务端到期时间重新计算，不做本地累减。
"""

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from storefront.core.expiry import as_utc, format_time_remaining, is_expiring_soon, time_remaining, utcnow

logger = logging.getLogger(__name__)


class CountdownTimer:
    """每秒回调一次 on_tick，归零时只触发一次 on_expire"""

    def __init__(
        self,
        expires_at: datetime,
        on_expire: Optional[Callable] = None,
        on_tick: Optional[Callable[[timedelta], None]] = None,
        clock: Callable[[], datetime] = utcnow,
        interval: float = 1.0,
    ):
        self.expires_at = as_utc(expires_at)
        self.on_expire = on_expire
        self.on_tick = on_tick
        self.clock = clock
        self.interval = interval
        self.fired = False
        self._task: Optional[asyncio.Task] = None

    @property
    def remaining(self) -> timedelta:
        return time_remaining(self.expires_at, self.clock())

    @property
    def label(self) -> str:
        """倒计时文案，如 14:05 或 42s"""
        return format_time_remaining(self.remaining)

    @property
    def expiring_soon(self) -> bool:
        return is_expiring_soon(self.expires_at, self.clock())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "CountdownTimer":
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """等待计时任务结束（包括被取消）"""
        if self._task is None or self._task is asyncio.current_task():
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def _run(self) -> None:
        while True:
            remaining = self.remaining
            if self.on_tick:
                self.on_tick(remaining)
            if remaining <= timedelta(0):
                break
            await asyncio.sleep(min(self.interval, remaining.total_seconds()))

        self.fired = True
        logger.debug(f"预占倒计时结束: expires_at={self.expires_at.isoformat()}")
        if self.on_expire:
            result = self.on_expire()
            if inspect.isawaitable(result):
                await result
