"""Bounded readiness polling for local proxy ports.

The same loop answers "is a proxy already listening?" (one attempt) and
"did the client we just started come up?" (a few attempts, one second
apart). Probe and sleep are injectable so tests run without sockets or a
real clock.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
import time
from typing import Callable, Sequence

from mytunnel_ctl.core.net_probe import tcp_probe

logger = logging.getLogger(__name__)

Address = tuple[str, int]
Probe = Callable[[str, int, float], bool]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int
    interval_s: float
    per_attempt_timeout_s: float

    @property
    def worst_case_s(self) -> float:
        return self.max_attempts * self.per_attempt_timeout_s + max(0, self.max_attempts - 1) * self.interval_s


ALREADY_RUNNING_POLICY = RetryPolicy(max_attempts=1, interval_s=0.0, per_attempt_timeout_s=1.0)
STARTUP_POLICY = RetryPolicy(max_attempts=6, interval_s=1.0, per_attempt_timeout_s=1.0)


class PollOutcome(enum.Enum):
    READY = "ready"
    PROCESS_EXITED = "processExited"
    TIMED_OUT = "timedOut"


def poll_ready(
    addresses: Sequence[Address],
    policy: RetryPolicy,
    *,
    process_alive: Callable[[], bool] | None = None,
    probe: Probe = tcp_probe,
    sleep: Callable[[float], None] = time.sleep,
) -> PollOutcome:
    """Probe `addresses` until one accepts a connection or the budget runs out.

    If `process_alive` is given it is checked before every attempt, and a dead
    process ends the loop early with PROCESS_EXITED.
    """
    for attempt in range(1, policy.max_attempts + 1):
        if process_alive is not None and not process_alive():
            logger.info("Process exited before readiness (attempt %s)", attempt)
            return PollOutcome.PROCESS_EXITED
        for host, port in addresses:
            if probe(host, port, policy.per_attempt_timeout_s):
                logger.debug("%s:%s ready on attempt %s", host, port, attempt)
                return PollOutcome.READY
        if attempt < policy.max_attempts:
            sleep(policy.interval_s)
    return PollOutcome.TIMED_OUT
