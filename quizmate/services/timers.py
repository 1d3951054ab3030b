"""
Quiz countdowns.

A quiz runs either a per-question countdown, re-armed for every question,
or a single countdown for the whole quiz. Each armed countdown fires its
expiry callback at most once, however many ticks race past zero.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from .preferences import QuizPreferences

logger = logging.getLogger(__name__)


class TimerMode(str, Enum):
    PER_QUESTION = "per-question"
    TOTAL = "total"


class QuizTimer:
    def __init__(
        self,
        per_question: Optional[int] = None,
        total: Optional[int] = None,
        on_expire: Optional[Callable[[TimerMode], None]] = None
    ):
        if per_question and total:
            raise ValueError("A quiz cannot have both a per-question and a total time limit")

        if per_question:
            self.mode: Optional[TimerMode] = TimerMode.PER_QUESTION
            self.limit = per_question
        elif total:
            self.mode = TimerMode.TOTAL
            self.limit = total
        else:
            self.mode = None
            self.limit = 0

        self.on_expire = on_expire
        self.remaining: float = self.limit
        self.fired = False
        self.stopped = False
        self.paused = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_preferences(
        cls,
        preferences: QuizPreferences,
        on_expire: Optional[Callable[[TimerMode], None]] = None
    ) -> "QuizTimer":
        return cls(
            per_question=preferences.time_limit,
            total=preferences.total_time_limit,
            on_expire=on_expire
        )

    @property
    def active(self) -> bool:
        return self.mode is not None and not self.stopped

    def tick(self, seconds: float = 1) -> bool:
        """Advance the countdown. Returns True only on the tick that expires it."""
        if not self.active or self.fired or self.paused:
            return False

        self.remaining = max(0, self.remaining - seconds)
        if self.remaining > 0:
            return False

        self.fired = True
        logger.debug("%s timer expired", self.mode.value)
        if self.on_expire:
            self.on_expire(self.mode)
        return True

    def next_question(self) -> None:
        """Re-arm a per-question countdown; a total countdown keeps running."""
        if self.mode == TimerMode.PER_QUESTION and not self.stopped:
            self.remaining = self.limit
            self.fired = False

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def stop(self) -> None:
        self.stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def run(self, interval: float = 1.0) -> None:
        while self.active:
            await asyncio.sleep(interval)
            self.tick(interval)

    def start(self, interval: float = 1.0) -> Optional[asyncio.Task]:
        """Drive the countdown from the running event loop."""
        if not self.active:
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run(interval))
        return self._task
