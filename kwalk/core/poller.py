from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Optional

import pydantic as pd
from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, retry_if_result
from tenacity.stop import stop_base
from rich.markup import escape
from tenacity.wait import wait_base, wait_exponential, wait_fixed

from kwalk.core.exceptions import ConditionTimeout
from kwalk.utils.configurable import Configurable

if TYPE_CHECKING:
    from kwalk.core.models.config import Config

logger = logging.getLogger("kwalk")

Predicate = Callable[[], bool]
Clock = Callable[[], float]
Sleep = Callable[[float], None]

# A polling strategy maps the interval requested by a wait to a tenacity wait policy.
PollStrategy = Callable[[float], wait_base]

POLL_STRATEGIES: dict[str, PollStrategy] = {
    "fixed": lambda interval: wait_fixed(interval),
    "exponential": lambda interval: wait_exponential(multiplier=interval, min=interval, max=interval * 8),
}


class WaitSpec(pd.BaseModel):
    """A single condition-wait request. Constructed per wait, consumed once."""

    description: str
    predicate: Predicate
    timeout: float = pd.Field(60, ge=0)
    interval: float = pd.Field(5, gt=0)
    strict: bool = True


class WaitOutcome(pd.BaseModel):
    description: str
    met: bool
    attempts: int
    elapsed: float


class stop_at_deadline(stop_base):
    """Stop once `timeout` seconds have passed on `clock` since `start`."""

    def __init__(self, timeout: float, clock: Clock, start: float) -> None:
        self.timeout = timeout
        self.clock = clock
        self.start = start

    def remaining(self) -> float:
        return self.timeout - (self.clock() - self.start)

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.remaining() <= 0


class wait_within_deadline(wait_base):
    """Never sleep past the deadline, so a failing wait returns within one interval of its timeout."""

    def __init__(self, wait: wait_base, deadline: stop_at_deadline) -> None:
        self.wait = wait
        self.deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> float:
        return max(0.0, min(self.wait(retry_state), self.deadline.remaining()))


def _not_met(result: Optional[bool]) -> bool:
    return not result


class ConditionPoller(Configurable):
    """
    Evaluates a predicate against cluster-reported state until it holds or the timeout elapses.

    The predicate is checked immediately and then after every interval. A predicate that raises
    is treated as "not met yet" for that tick: right after a mutating call the control plane
    may still report stale state or fail transiently.
    """

    def __init__(
        self,
        config: Config,
        *,
        strategy: Optional[PollStrategy] = None,
        sleep: Sleep = time.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        super().__init__(config)
        self.strategy = strategy or POLL_STRATEGIES[config.poll_strategy]
        self._sleep = sleep
        self._clock = clock

    def _before_sleep(self, spec: WaitSpec) -> Callable[[RetryCallState], None]:
        def log_attempt(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            if outcome is not None and outcome.failed:
                error = escape(repr(outcome.exception()))
                self.debug(f"{spec.description}: attempt {retry_state.attempt_number} raised {error}")
            else:
                self.debug(f"{spec.description}: attempt {retry_state.attempt_number} not met yet")

        return log_attempt

    def wait_for(self, spec: WaitSpec) -> WaitOutcome:
        self.info(f"Waiting for: {spec.description} (timeout: {spec.timeout:g}s)")

        start = self._clock()
        deadline = stop_at_deadline(spec.timeout, self._clock, start)
        retrying = Retrying(
            stop=deadline,
            wait=wait_within_deadline(self.strategy(spec.interval), deadline),
            retry=retry_if_result(_not_met) | retry_if_exception_type(Exception),
            sleep=self._sleep,
            before_sleep=self._before_sleep(spec),
        )

        attempts = 0

        def attempt() -> bool:
            nonlocal attempts
            attempts += 1
            return spec.predicate()

        try:
            retrying(attempt)
        except RetryError:
            elapsed = self._clock() - start
            if spec.strict:
                self.error(f"{spec.description} - Timeout reached!")
                raise ConditionTimeout(spec.description, attempts, elapsed) from None

            self.warning(f"{spec.description} - Timeout reached after {attempts} attempts")
            return WaitOutcome(description=spec.description, met=False, attempts=attempts, elapsed=elapsed)

        self.success(f"{spec.description} - Condition met!")
        return WaitOutcome(description=spec.description, met=True, attempts=attempts, elapsed=self._clock() - start)

    def wait(
        self,
        description: str,
        predicate: Predicate,
        *,
        timeout: float,
        interval: float,
        strict: bool = True,
    ) -> WaitOutcome:
        return self.wait_for(
            WaitSpec(description=description, predicate=predicate, timeout=timeout, interval=interval, strict=strict)
        )
