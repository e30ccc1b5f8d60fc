import asyncio
from dataclasses import dataclass
from enum import StrEnum, auto
from logging import Logger
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .logger import default_logger
from .utils import format_error_message

T = TypeVar("T")

# Grace period past the timeout, which lets a probe that's in flight at the
# deadline complete before the poll gives up.
TIMEOUT_MARGIN_MS = 10

# `end` is handed to each invocation of a probe. Calling it completes the poll.
End = Callable[[T], None]
Probe = Callable[[End[T]], Awaitable[None]]


class PollPhase(StrEnum):
    IDLE = auto()
    RUNNING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    CANCELLED = auto()

    @property
    def terminal(self) -> bool:
        return self in (PollPhase.SUCCEEDED, PollPhase.FAILED, PollPhase.CANCELLED)


@dataclass(frozen=True)
class PollState(Generic[T]):
    phase: PollPhase
    result: T | None = None
    error: BaseException | None = None


class PollMisuseError(RuntimeError):
    """PollMisuseError is raised for programming errors in the use of a Poll."""


class PollCancelled(Exception):
    """PollCancelled is raised by Poll.wait() if the poll was cancelled."""

    def __init__(self, message: str = "poll was cancelled"):
        super().__init__(message)


class PollTimeout(PollCancelled):
    """PollTimeout is raised by Poll.wait() if the poll timed out without completing."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"poll did not complete within {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class Poll(Generic[T]):
    """
    Poll repeatedly invokes an asynchronous probe on a fixed interval, until
    the probe completes it by calling `end(result)`, fails it by raising, or
    a timeout elapses.

    Probe invocations never overlap: a tick which finds the previous
    invocation still in flight is skipped rather than queued. Once the poll
    reaches a terminal phase its timers are cleared, no further invocations
    occur, and the results of any in-flight invocation are ignored.

        poll = Poll[list[ParameterSpec]](log)
        poll.start(probe, interval_ms=2000, timeout_ms=60_000)
        fragment = await poll.wait()
    """

    invocations: int
    """Number of times the probe has been invoked."""

    def __init__(self, log: Logger | None = None, name: str = "poll"):
        self.log = log or default_logger()
        self.name = name
        self.invocations = 0

        self._state: PollState[T] = PollState(PollPhase.IDLE)
        self._settled = asyncio.Event()
        self._probe: Probe[T] | None = None
        self._ticker: asyncio.Task | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._inflight: asyncio.Task | None = None
        self._callbacks: list[Callable[["Poll[T]"], None]] = []

    @property
    def state(self) -> PollState[T]:
        return self._state

    def start(self, probe: Probe[T], interval_ms: int, timeout_ms: int) -> "Poll[T]":
        """Begins polling. Must be called from within a running event loop."""

        if self._state.phase != PollPhase.IDLE:
            raise PollMisuseError(
                f"cannot start poll '{self.name}' which is already {self._state.phase}"
            )
        if interval_ms <= 0 or timeout_ms < 0:
            raise ValueError(
                f"invalid poll timing (interval {interval_ms}ms, timeout {timeout_ms}ms)"
            )

        loop = asyncio.get_running_loop()

        self._probe = probe
        self._state = PollState(PollPhase.RUNNING)
        self._ticker = loop.create_task(
            self._tick(interval_ms / 1000), name=f"{self.name}.ticker"
        )
        self._deadline = loop.call_later(
            (timeout_ms + TIMEOUT_MARGIN_MS) / 1000, self._expire, timeout_ms
        )

        self.log.debug(
            "poll started",
            {"poll": self.name, "interval_ms": interval_ms, "timeout_ms": timeout_ms},
        )
        return self

    async def wait(self) -> T:
        """
        Waits for the poll to reach a terminal phase, and returns its result.

        Raises the probe's exception if the poll failed, PollTimeout if it
        timed out, or PollCancelled if it was cancelled.
        """

        if self._state.phase == PollPhase.IDLE:
            raise PollMisuseError(f"wait() called on poll '{self.name}' before start()")

        await self._settled.wait()

        state = self._state
        if state.phase == PollPhase.SUCCEEDED:
            return state.result  # type: ignore[return-value]

        assert state.error is not None
        raise state.error

    def add_done_callback(self, fn: Callable[["Poll[T]"], None]) -> None:
        """Calls `fn(poll)` once the poll is terminal, or immediately if it already is."""

        if self._state.phase.terminal:
            fn(self)
        else:
            self._callbacks.append(fn)

    def cancel(self) -> None:
        """Cancels the poll. Safe to call any number of times, in any phase."""

        if self._state.phase.terminal:
            return
        self._settle(PollState(PollPhase.CANCELLED, error=PollCancelled()))

    def _end(self, result: T) -> None:
        if self._state.phase != PollPhase.RUNNING:
            self.log.debug(
                "ignoring result of settled poll",
                {"poll": self.name, "phase": self._state.phase},
            )
            return
        self._settle(PollState(PollPhase.SUCCEEDED, result=result))

    def _expire(self, timeout_ms: int) -> None:
        self._deadline = None
        if self._state.phase == PollPhase.RUNNING:
            self._settle(
                PollState(PollPhase.CANCELLED, error=PollTimeout(timeout_ms))
            )

    def _settle(self, state: PollState[T]) -> None:
        self._state = state

        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

        self._settled.set()

        callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            fn(self)

        fields: dict[str, Any] = {
            "poll": self.name,
            "phase": state.phase,
            "invocations": self.invocations,
        }
        if state.error is not None:
            fields["error"] = format_error_message(state.error)
        self.log.debug("poll settled", fields)

    async def _tick(self, interval: float) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        # Ticks are scheduled relative to the start of the poll, so that
        # slow probes don't accumulate drift.
        while True:
            next_tick += interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

            if self._inflight is not None:
                self.log.debug(
                    "skipping poll tick (previous probe is still running)",
                    {"poll": self.name},
                )
                continue

            self._inflight = loop.create_task(
                self._invoke(), name=f"{self.name}.probe"
            )

    async def _invoke(self) -> None:
        assert self._probe is not None
        self.invocations += 1

        try:
            await self._probe(self._end)
        except Exception as exc:
            if self._state.phase == PollPhase.RUNNING:
                self._settle(PollState(PollPhase.FAILED, error=exc))
            else:
                self.log.debug(
                    "ignoring failure of settled poll",
                    {"poll": self.name, "error": format_error_message(exc)},
                )
        finally:
            self._inflight = None
