"""
Countdown primitive + timeout decision.

Countdown knows nothing about game rules: it emits a tick every
`tick_seconds` and one expiry. timeout_transition() is the rule side: which
phase a running timer belongs to and where the game goes when it runs out.
The Game Master composes the two.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from models.game import Phase, TimerKind

logger = logging.getLogger(__name__)

TickHandler = Callable[[int], Awaitable[None]]
ExpireHandler = Callable[[], Awaitable[None]]


class Countdown:
    """
    Counts `duration` down to zero, one tick per `tick_seconds`.

    The owning task detaches itself before the expiry handler runs, so an
    expiry handler that starts the next countdown (and cancels "the current
    one") cannot cancel itself, and expiry fires exactly once.
    """

    def __init__(
        self,
        duration: int,
        on_tick: TickHandler,
        on_expire: ExpireHandler,
        tick_seconds: float = 1.0,
    ):
        self.duration = duration
        self.remaining = duration
        self.on_tick = on_tick
        self.on_expire = on_expire
        self.tick_seconds = tick_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "Countdown":
        self.cancel()
        self.remaining = self.duration
        self._task = asyncio.create_task(self._run())
        return self

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while self.remaining > 0:
            await asyncio.sleep(self.tick_seconds)
            self.remaining -= 1
            try:
                await self.on_tick(self.remaining)
            except Exception as exc:
                # A failed tick mirror must not stop the clock
                logger.warning("Countdown tick handler failed: %s", exc)

        self._task = None
        await self.on_expire()


# kind → (phase the timer belongs to, phase a timeout moves to)
TIMEOUT_TRANSITIONS: Dict[TimerKind, Tuple[Phase, Phase]] = {
    TimerKind.MEETING: (Phase.MEETING_DISCUSSION, Phase.VOTING),
    TimerKind.VOTING: (Phase.VOTING, Phase.VOTE_RESULT),
    TimerKind.BREAK: (Phase.BREAK, Phase.NIGHT_SPECIAL),
}


def timeout_transition(kind: TimerKind) -> Tuple[Phase, Phase]:
    return TIMEOUT_TRANSITIONS[kind]
