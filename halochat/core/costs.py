"""Token-cost estimation and balance accounting.

Two ownership models for the balance, one active per process:
  - client: the caller sends sessionCost/balance and gets updated figures back.
  - server: a CostLedger owned by the app is shared by every request.

Per-call costs are rounded to 4 dp. Cumulative figures are shown in cents,
rounding session totals up and balances down so no charge is hidden. The
unrounded running figures (4 dp) travel alongside so a client that echoes them
back does not pay a full cent for every sub-cent call.
"""

import threading
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

import structlog

from halochat.core.model_registry import ModelProfile

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
MILLION = Decimal(1_000_000)
FOUR_DP = Decimal("0.0001")
TWO_DP = Decimal("0.01")


class BalanceExhausted(Exception):
    """Server-held balance is used up; no upstream call may be made."""
    pass


@dataclass(frozen=True)
class UsageReport:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class CostSummary:
    """Figures returned to the client as `costs`.

    `session`/`balance` are the cent display figures; `session_exact` and
    `balance_exact` are the same totals at 4 dp.
    """
    last: Decimal
    session: Decimal
    balance: Decimal
    session_exact: Decimal
    balance_exact: Decimal

    @classmethod
    def from_exact(cls, last: Decimal, session: Decimal, balance: Decimal) -> "CostSummary":
        session = round_cost(max(session, ZERO))
        balance = round_cost(max(balance, ZERO))
        return cls(
            last=round_cost(last),
            session=round_session(session),
            balance=round_balance(balance),
            session_exact=session,
            balance_exact=balance,
        )


def round_cost(value: Decimal) -> Decimal:
    return value.quantize(FOUR_DP, rounding=ROUND_HALF_UP)


def round_session(value: Decimal) -> Decimal:
    return value.quantize(TWO_DP, rounding=ROUND_CEILING)


def round_balance(value: Decimal) -> Decimal:
    return max(value, ZERO).quantize(TWO_DP, rounding=ROUND_FLOOR)


def usage_from_metadata(metadata) -> UsageReport | None:
    """Read token counts from LangChain usage_metadata or an Anthropic usage dict.

    Returns:
        UsageReport, or None if counts are missing, non-integer or negative.
    """
    if metadata is None:
        return None
    if not isinstance(metadata, dict):
        metadata = {
            "input_tokens": getattr(metadata, "input_tokens", None),
            "output_tokens": getattr(metadata, "output_tokens", None),
        }

    counts = []
    for key in ("input_tokens", "output_tokens"):
        value = metadata.get(key)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            return None
        counts.append(value)
    return UsageReport(*counts)


def compute_cost(usage: UsageReport | None, profile: ModelProfile) -> Decimal:
    """Estimated USD cost of one call, 4 dp. Zero when usage is unknown."""
    if usage is None:
        return round_cost(ZERO)

    cost = (
        Decimal(usage.input_tokens) / MILLION * profile.input_price_per_mtok
        + Decimal(usage.output_tokens) / MILLION * profile.output_price_per_mtok
    )
    return round_cost(max(cost, ZERO))


def reconcile_client_balance(cost: Decimal, session_cost: Decimal, balance: Decimal) -> CostSummary:
    """Apply one charge to client-supplied figures. Balance floors at zero."""
    cost = max(cost, ZERO)
    return CostSummary.from_exact(cost, max(session_cost, ZERO) + cost, balance - cost)


class CostLedger:
    """Process-wide spend counter. Not persisted; lost on restart.

    Updates take a lock so concurrent handlers (including ones run in the
    threadpool) never lose a charge.
    """

    def __init__(self, starting_balance: Decimal):
        self.starting_balance = starting_balance
        self._total_spent = ZERO
        self._lock = threading.Lock()

    @property
    def total_spent(self) -> Decimal:
        with self._lock:
            return self._total_spent

    @property
    def balance(self) -> Decimal:
        with self._lock:
            return max(self.starting_balance - self._total_spent, ZERO)

    @property
    def is_exhausted(self) -> bool:
        return self.balance <= ZERO

    def charge(self, cost: Decimal) -> CostSummary:
        """Add a non-negative charge and return the updated summary."""
        cost = max(cost, ZERO)
        with self._lock:
            self._total_spent += cost
            spent = self._total_spent
        logger.info("ledger.charged", cost=str(cost), total_spent=str(spent))
        return self.snapshot(cost)

    def snapshot(self, last: Decimal = ZERO) -> CostSummary:
        with self._lock:
            spent = self._total_spent
        return CostSummary.from_exact(last, spent, self.starting_balance - spent)

    def reset(self) -> CostSummary:
        with self._lock:
            self._total_spent = ZERO
        logger.info("ledger.reset", starting_balance=str(self.starting_balance))
        return self.snapshot()
