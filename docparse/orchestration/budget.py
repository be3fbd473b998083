"""Cost accounting for paid provider calls.

``CostLedger`` is the daily spend counter shared by every session in a
process. Paid calls reserve their estimated cost before they run
(reserve-before-spend), then commit the actual cost or release the
reservation, so concurrent pages can never overshoot the daily limit
together. ``DocumentBudget`` tracks spend within one document.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import date

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# Float tolerance when comparing spend against a limit
EPSILON = 1e-9


class Reservation(BaseModel):
    """Budget held for one in-flight paid call."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    amount: float = Field(ge=0)
    day: date


class CostLedger:
    """Thread-safe daily spend counter with reservations."""

    def __init__(self, daily_limit: float, clock: Callable[[], date] = date.today) -> None:
        """Initialize the ledger.

        Args:
            daily_limit: Default spending ceiling per calendar day (USD)
            clock: Returns the current day, injectable for tests
        """
        self.daily_limit = daily_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._day = clock()
        self._spent = 0.0
        self._reserved = 0.0

    def _roll_over(self) -> None:
        today = self._clock()
        if today != self._day:
            logger.info(f"Cost ledger rolled over to {today.isoformat()} (spent {self._spent:.4f})")
            self._day = today
            self._spent = 0.0
            self._reserved = 0.0

    @property
    def spent_today(self) -> float:
        with self._lock:
            self._roll_over()
            return round(self._spent, 6)

    @property
    def reserved(self) -> float:
        with self._lock:
            self._roll_over()
            return round(self._reserved, 6)

    def remaining(self, limit: float | None = None) -> float:
        limit = self.daily_limit if limit is None else limit
        with self._lock:
            self._roll_over()
            return max(0.0, limit - self._spent - self._reserved)

    def reserve(self, amount: float, limit: float | None = None) -> Reservation | None:
        """Hold ``amount`` against today's limit.

        Args:
            amount: Estimated cost of the call
            limit: Ceiling to check against (defaults to ``daily_limit``)

        Returns:
            Reservation, or None if the call would breach the limit
        """
        limit = self.daily_limit if limit is None else limit
        with self._lock:
            self._roll_over()
            if self._spent + self._reserved + amount > limit + EPSILON:
                return None
            self._reserved += amount
            return Reservation(amount=amount, day=self._day)

    def commit(self, reservation: Reservation, actual_cost: float) -> None:
        """Convert a reservation into actual spend."""
        with self._lock:
            self._roll_over()
            if reservation.day == self._day:
                self._reserved = max(0.0, self._reserved - reservation.amount)
            self._spent += actual_cost

    def release(self, reservation: Reservation) -> None:
        """Drop a reservation whose call never incurred cost."""
        with self._lock:
            self._roll_over()
            if reservation.day == self._day:
                self._reserved = max(0.0, self._reserved - reservation.amount)


class DocumentBudget:
    """Spend within one document, checked before every paid call."""

    def __init__(self, limit: float) -> None:
        self.limit = limit
        self._spent = 0.0
        self._lock = threading.Lock()

    @property
    def spent(self) -> float:
        with self._lock:
            return round(self._spent, 6)

    @property
    def remaining(self) -> float:
        with self._lock:
            return max(0.0, self.limit - self._spent)

    def charge(self, amount: float) -> None:
        with self._lock:
            self._spent += amount
