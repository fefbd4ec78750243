"""
loopbot Core: Market-making accounting policies

Each accounting mode decides how buys and sells mutate a wallet's position
and what the next permissible action is. The policy is chosen once when a
tracker is built; nothing downstream branches on the mode string again.

Modes:
- normal:  LIFO lots. Buys push tokens received, sells pop the latest lot.
- bullish: as normal, but the first buy fixes the currency amount used for
           every later buy.
- bearish: sells push currency received and the first sell fixes the token
           amount sold each time; buys spend back the latest proceeds.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from core.exceptions import ConfigurationError
from core.models import LastAction

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    NORMAL = "normal"
    BULLISH = "bullish"
    BEARISH = "bearish"

    @classmethod
    def parse(cls, value: Union[str, "Mode"]) -> "Mode":
        if isinstance(value, Mode):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        allowed = ", ".join(m.value for m in cls)
        raise ConfigurationError(f"Invalid market-making mode: {value!r} (expected one of: {allowed})")


class StatisticsAggregator:
    """
    Aggregate counters shared by every position of one tracker.

    Counters only ever increase; reset() is the single way back to zero.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.total_buys = 0
        self.total_sells = 0
        self.total_volume = 0.0
        self.successful_loops = 0
        self.failed_transactions = 0
        self.skipped_actions = 0

    def record_buy(self, spent: float) -> None:
        self.total_buys += 1
        self.total_volume += max(float(spent), 0.0)

    def record_sell(self) -> bool:
        """Count a sell. Returns True when it closes a loop.

        A loop closes when global buys equal global sells right after a
        sell. This is deliberately not per-wallet.
        """
        self.total_sells += 1
        if self.total_buys == self.total_sells:
            self.successful_loops += 1
            return True
        return False

    def record_failure(self, skipped: bool = False) -> None:
        self.failed_transactions += 1
        if skipped:
            self.skipped_actions += 1

    def snapshot(self) -> Dict[str, float]:
        return {
            "total_buys": self.total_buys,
            "total_sells": self.total_sells,
            "total_volume": self.total_volume,
            "successful_loops": self.successful_loops,
            "failed_transactions": self.failed_transactions,
            "skipped_actions": self.skipped_actions,
        }


@dataclass
class Position:
    """Per-wallet accounting state."""
    stats: StatisticsAggregator = field(repr=False)
    buy_history: List[float] = field(default_factory=list)
    sell_history: List[float] = field(default_factory=list)
    last_action: LastAction = LastAction.NONE
    _fixed_amount: Optional[float] = None

    @property
    def fixed_amount(self) -> Optional[float]:
        return self._fixed_amount

    def fix_amount(self, value: float) -> None:
        """Set fixed_amount on first call; later calls are ignored."""
        if self._fixed_amount is None:
            self._fixed_amount = float(value)

    @property
    def pending_tokens(self) -> float:
        return sum(self.buy_history)

    def record_buy(self, policy: "AccountingPolicy", spent: float, received: float) -> None:
        policy.on_buy(self, spent, received)
        self.last_action = LastAction.BUY
        self.stats.record_buy(spent)

    def record_sell(self, policy: "AccountingPolicy", sold: float, received: float) -> bool:
        policy.on_sell(self, sold, received)
        self.last_action = LastAction.SELL
        return self.stats.record_sell()


# ===== Next-action recommendations (one variant per mode) =====

@dataclass(frozen=True)
class NormalAction:
    can_buy: bool
    can_sell: bool
    sell_amount: Optional[float]
    mode: Mode = field(default=Mode.NORMAL, init=False)


@dataclass(frozen=True)
class BullishAction:
    can_buy: bool
    can_sell: bool
    buy_amount: Optional[float]
    sell_amount: Optional[float]
    mode: Mode = field(default=Mode.BULLISH, init=False)


@dataclass(frozen=True)
class BearishAction:
    can_buy: bool
    can_sell: bool
    buy_amount: Optional[float]
    sell_amount: Optional[float]
    mode: Mode = field(default=Mode.BEARISH, init=False)


ActionRecommendation = Union[NormalAction, BullishAction, BearishAction]


def _last(history: List[float]) -> Optional[float]:
    return history[-1] if history else None


# ===== Policies =====

class AccountingPolicy(ABC):
    """How one accounting mode mutates a position."""

    mode: Mode

    @abstractmethod
    def on_buy(self, position: Position, spent: float, received: float) -> None:
        ...

    @abstractmethod
    def on_sell(self, position: Position, sold: float, received: float) -> None:
        ...

    @abstractmethod
    def next_action(self, position: Position) -> ActionRecommendation:
        ...


class NormalAccounting(AccountingPolicy):
    mode = Mode.NORMAL

    def on_buy(self, position: Position, spent: float, received: float) -> None:
        position.buy_history.append(received)

    def on_sell(self, position: Position, sold: float, received: float) -> None:
        if position.buy_history:
            position.buy_history.pop()

    def next_action(self, position: Position) -> NormalAction:
        return NormalAction(
            can_buy=True,
            can_sell=bool(position.buy_history),
            sell_amount=_last(position.buy_history),
        )


class BullishAccounting(NormalAccounting):
    mode = Mode.BULLISH

    def on_buy(self, position: Position, spent: float, received: float) -> None:
        position.buy_history.append(received)
        position.fix_amount(spent)

    def next_action(self, position: Position) -> BullishAction:
        return BullishAction(
            can_buy=True,
            can_sell=bool(position.buy_history),
            buy_amount=position.fixed_amount,
            sell_amount=_last(position.buy_history),
        )


class BearishAccounting(AccountingPolicy):
    mode = Mode.BEARISH

    def on_buy(self, position: Position, spent: float, received: float) -> None:
        # Buys spend back tracked proceeds; history is left untouched.
        pass

    def on_sell(self, position: Position, sold: float, received: float) -> None:
        position.sell_history.append(received)
        position.fix_amount(sold)

    def next_action(self, position: Position) -> BearishAction:
        return BearishAction(
            can_buy=bool(position.sell_history),
            can_sell=True,
            buy_amount=_last(position.sell_history),
            sell_amount=position.fixed_amount,
        )


_POLICIES = {
    Mode.NORMAL: NormalAccounting,
    Mode.BULLISH: BullishAccounting,
    Mode.BEARISH: BearishAccounting,
}


def policy_for(mode: Union[str, Mode]) -> AccountingPolicy:
    """Build the accounting policy for a mode; unknown modes raise ConfigurationError."""
    parsed = Mode.parse(mode)
    policy_cls = _POLICIES.get(parsed)
    if policy_cls is None:
        raise ConfigurationError(f"No accounting policy registered for mode {parsed.value}")
    return policy_cls()
