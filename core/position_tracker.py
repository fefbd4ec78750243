"""
Position Tracking: Per-wallet trade accounting for market-making loops

Records buys, sells and failures per wallet, keeps a process-lifetime trade
log, and recommends the next permissible action under the active mode.

Not safe for concurrent writers: drive one tracker from a single loop, or
give each parallel wallet its own tracker.
"""
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from core.accounting import (
    AccountingPolicy,
    ActionRecommendation,
    Mode,
    Position,
    StatisticsAggregator,
    policy_for,
)
from core.models import TradeRecord, TradeType

logger = logging.getLogger(__name__)


def _price(numerator: float, denominator: float) -> Optional[float]:
    if not denominator:
        return None
    return numerator / denominator


class PositionTracker:
    """
    Tracks market-making positions and trade history.

    Responsibilities:
    - Lazily create a Position for every wallet address it sees
    - Apply the mode's accounting policy on each buy/sell
    - Record failures without touching buy/sell history
    - Maintain aggregate statistics and the trade log
    """

    def __init__(self, mode: Union[str, Mode] = Mode.NORMAL, stats: Optional[StatisticsAggregator] = None):
        """
        Initialize PositionTracker.

        Args:
            mode: Accounting mode (normal, bullish, bearish)
            stats: Aggregator shared by all positions (created if omitted)

        Raises:
            ConfigurationError: if mode is not a known accounting mode
        """
        self._policy: AccountingPolicy = policy_for(mode)
        self._stats = stats or StatisticsAggregator()
        self._positions: Dict[str, Position] = {}
        self._trade_log: List[TradeRecord] = []

        logger.info(f"PositionTracker initialized: mode={self._policy.mode.value}")

    @property
    def mode(self) -> Mode:
        return self._policy.mode

    @property
    def trade_log(self) -> Tuple[TradeRecord, ...]:
        return tuple(self._trade_log)

    def positions(self) -> Iterator[Tuple[str, Position]]:
        return iter(list(self._positions.items()))

    def _position(self, wallet_address: str) -> Position:
        position = self._positions.get(wallet_address)
        if position is None:
            position = Position(stats=self._stats)
            self._positions[wallet_address] = position
        return position

    def track_buy(
        self,
        wallet_address: str,
        spent: float,
        received: float,
        meta: Optional[Dict[str, Any]] = None,
    ) -> TradeRecord:
        """
        Record a completed buy.

        Args:
            wallet_address: Wallet that bought
            spent: Base currency spent
            received: Tokens received
            meta: Optional tx_hash / block_number

        Returns:
            The appended buy TradeRecord
        """
        meta = meta or {}
        position = self._position(wallet_address)
        position.record_buy(self._policy, spent, received)

        record = TradeRecord(
            type=TradeType.BUY,
            wallet_address=wallet_address,
            amount_in=spent,
            amount_out=received,
            price=_price(spent, received),
            tx_hash=meta.get("tx_hash"),
            block_number=meta.get("block_number"),
        )
        self._trade_log.append(record)
        logger.debug(f"BUY {wallet_address[:8]}: spent={spent:.6f} received={received:.6f}")
        return record

    def track_sell(
        self,
        wallet_address: str,
        sold: float,
        received: float,
        meta: Optional[Dict[str, Any]] = None,
    ) -> TradeRecord:
        """
        Record a completed sell.

        The caller must have checked get_next_action().can_sell first; the
        tracker does not re-validate.

        Args:
            wallet_address: Wallet that sold
            sold: Tokens sold
            received: Base currency received
            meta: Optional tx_hash / block_number

        Returns:
            The appended sell TradeRecord
        """
        meta = meta or {}
        position = self._position(wallet_address)
        loop_closed = position.record_sell(self._policy, sold, received)

        record = TradeRecord(
            type=TradeType.SELL,
            wallet_address=wallet_address,
            amount_in=sold,
            amount_out=received,
            price=_price(received, sold),
            tx_hash=meta.get("tx_hash"),
            block_number=meta.get("block_number"),
        )
        self._trade_log.append(record)
        logger.debug(f"SELL {wallet_address[:8]}: sold={sold:.6f} received={received:.6f}")
        if loop_closed:
            logger.info(f"Loop completed (total loops: {self._stats.successful_loops})")
        return record

    def track_failure(self, wallet_address: str, action: str, reason: str, skipped: bool = False) -> TradeRecord:
        """
        Record a failed attempt. Never mutates buy/sell history.

        skipped marks an action the next-action recommendation did not
        permit (never submitted). It still counts as a failure; the
        reason is prefixed with "skipped: " and skipped_actions goes up.
        """
        self._position(wallet_address)
        self._stats.record_failure(skipped=skipped)

        record = TradeRecord(
            type=TradeType.FAILED,
            wallet_address=wallet_address,
            action=action,
            reason=f"skipped: {reason}" if skipped else reason,
        )
        self._trade_log.append(record)
        logger.warning(f"FAILED {action} for {wallet_address[:8]}: {reason}")
        return record

    def get_next_action(self, wallet_address: str) -> ActionRecommendation:
        """Recommend the next permissible action for a wallet under the active mode."""
        return self._policy.next_action(self._position(wallet_address))

    def get_wallet_position(self, wallet_address: str) -> Dict[str, Any]:
        """Position snapshot (copies, safe to hold on to)."""
        position = self._position(wallet_address)
        return {
            "mode": self.mode.value,
            "buy_history": list(position.buy_history),
            "sell_history": list(position.sell_history),
            "pending_tokens": position.pending_tokens,
            "last_action": position.last_action.value,
            "fixed_amount": position.fixed_amount,
        }

    def get_statistics(self) -> Dict[str, Any]:
        """
        Aggregate statistics.

        success_rate is (buys - failures) / buys * 100, or 0.0 with no buys.
        avg_loop_completion is loops / floor(buys / 2) * 100, or 0.0.
        """
        stats = self._stats.snapshot()
        total_buys = stats["total_buys"]

        success_rate = 0.0
        if total_buys > 0:
            success_rate = round((total_buys - stats["failed_transactions"]) / total_buys * 100, 2)

        loop_pairs = total_buys // 2
        avg_loop_completion = 0.0
        if loop_pairs > 0:
            avg_loop_completion = round(stats["successful_loops"] / loop_pairs * 100, 2)

        stats["success_rate"] = success_rate
        stats["avg_loop_completion"] = avg_loop_completion
        return stats

    def reset(self) -> None:
        """Clear all positions, the trade log and every counter."""
        self._positions.clear()
        self._trade_log = []
        self._stats.reset()
        logger.info("PositionTracker reset")
