"""
Simulated acquirer.

Nothing here talks to a bank: a charge attempt succeeds with a fixed
probability. Tests inject ``DeterministicGatewaySimulator`` instead.
"""
import random
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Protocol

DEFAULT_FAILURE_REASON = "Payment simulation failed"


@dataclass(frozen=True)
class ChargeOutcome:
    """Result of one simulated charge."""

    success: bool
    failure_reason: Optional[str] = None


class GatewaySimulator(Protocol):
    def charge(self, amount: int, currency: str, payment_method: str) -> ChargeOutcome:
        ...


class RandomGatewaySimulator:
    """Succeeds with probability ``success_rate`` (0.9 by default)."""

    def __init__(self, success_rate: float = 0.9, rng: Optional[random.Random] = None):
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError("success_rate must be between 0 and 1")
        self.success_rate = success_rate
        self._rng = rng or random.Random()

    def charge(self, amount: int, currency: str, payment_method: str) -> ChargeOutcome:
        if self._rng.random() < self.success_rate:
            return ChargeOutcome(success=True)
        return ChargeOutcome(success=False, failure_reason=DEFAULT_FAILURE_REASON)


class DeterministicGatewaySimulator:
    """Replays a fixed sequence of outcomes, then repeats the last one."""

    def __init__(self, outcomes: Iterable[bool] = (True,), failure_reason: str = DEFAULT_FAILURE_REASON):
        self._outcomes: Iterator[bool] = iter(list(outcomes))
        self._last = True
        self.failure_reason = failure_reason
        self.calls = 0

    def charge(self, amount: int, currency: str, payment_method: str) -> ChargeOutcome:
        self.calls += 1
        self._last = next(self._outcomes, self._last)
        if self._last:
            return ChargeOutcome(success=True)
        return ChargeOutcome(success=False, failure_reason=self.failure_reason)
