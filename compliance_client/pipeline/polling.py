from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from compliance_client.exceptions import PollingCancelledError, PollingTimeoutError

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]


class PollState(str, Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = {PollState.SUCCEEDED, PollState.FAILED, PollState.CANCELLED}


class PollingLoop:
    """Interval polling driven by a single loop with cooperative cancellation.

    Subclasses implement ``_poll_once`` returning the final result, ``None``
    to keep polling, or raising to fail. The loop re-checks its liveness
    after every await, so once ``cancel()`` returns nothing else is emitted
    or mutated, even if a request that was in flight completes later.
    """

    name = "polling loop"

    def __init__(
        self,
        interval_seconds: float,
        *,
        max_attempts: Optional[int] = None,
        max_wait_seconds: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Optional[ClockFn] = None,
    ):
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.max_wait_seconds = max_wait_seconds
        self.state = PollState.IDLE
        self.attempts = 0
        self.logger = logging.getLogger(self.__class__.__module__)
        self._sleep = sleep
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._result: Any = None
        self._error: Optional[BaseException] = None

    @property
    def active(self) -> bool:
        return self.state is PollState.POLLING

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def start(self) -> asyncio.Task:
        if self.state is not PollState.IDLE:
            raise RuntimeError(f"{self.name} already started")
        self.state = PollState.POLLING
        self._task = asyncio.create_task(self._run())
        return self._task

    def cancel(self) -> None:
        if self.done:
            return
        self.state = PollState.CANCELLED
        self.logger.info(f"{self.name} cancelled", extra={"attempts": self.attempts})
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> Any:
        if self._task is None:
            raise RuntimeError(f"{self.name} was never started")
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        if self.state is PollState.CANCELLED:
            raise PollingCancelledError(f"{self.name} was cancelled")
        if self._error is not None:
            raise self._error
        return self._result

    async def run(self) -> Any:
        self.start()
        return await self.wait()

    async def _run(self) -> None:
        started_at = self._now()
        try:
            while True:
                self.attempts += 1
                result = await self._poll_once()
                if not self.active:
                    return
                if result is not None:
                    self._result = result
                    self.state = PollState.SUCCEEDED
                    return
                self._check_bounds(started_at)
                await self._sleep(self.interval_seconds)
                if not self.active:
                    return
        except asyncio.CancelledError:
            if self.state is not PollState.CANCELLED:
                raise
        except Exception as exc:
            if not self.active:
                return
            self._error = exc
            self.state = PollState.FAILED
            self.logger.warning(f"{self.name} stopped: {exc}", extra={"attempts": self.attempts})
            await self._on_failure(exc)

    def _check_bounds(self, started_at: float) -> None:
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            raise PollingTimeoutError(f"{self.name} timed out after {self.attempts} attempts")
        if self.max_wait_seconds is not None and self._now() - started_at >= self.max_wait_seconds:
            raise PollingTimeoutError(f"{self.name} timed out after {self.max_wait_seconds:g} seconds")

    async def _poll_once(self) -> Any:
        raise NotImplementedError

    async def _on_failure(self, exc: Exception) -> None:
        return None
