"""
loopbot Core: Execution planning for bulk sells

Turns a bulk-sell request into an ordered list of ExecutionSteps.

Time-weighted (TWAP) plans split a total amount into N slices spread over a
duration. Nominal slice delays are duration / N each, so they sum exactly
to the requested duration. Optional jitter perturbs both amounts and delays
by at most jitter_pct of the nominal value, then re-centres the offsets so
the totals are unchanged.

Flash-liquidate plans sell every sellable holding of every enabled wallet,
wallet by wallet, and are only produced after two explicit confirmations.
"""

import logging
import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from core.exceptions import ConfigurationError, EmptyHoldings, OperatorAborted
from core.interfaces import InteractionSession
from core.models import TokenHolding, Wallet

logger = logging.getLogger(__name__)

MAX_JITTER_PCT = 20.0


class PlanKind(str, Enum):
    TIME_WEIGHTED = "time_weighted"
    FLASH_LIQUIDATE = "flash_liquidate"


@dataclass(frozen=True)
class ExecutionStep:
    """One sell to submit. delay_seconds is the wait after this step."""
    index: int
    amount: float
    delay_seconds: float
    nominal_delay_seconds: float
    max_slippage_pct: float
    wallet_address: Optional[str] = None
    token: Optional[TokenHolding] = None


@dataclass
class ExecutionPlan:
    kind: PlanKind
    steps: List[ExecutionStep] = field(default_factory=list)
    total_amount: float = 0.0
    duration_seconds: float = 0.0

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def per_step_amount(self) -> float:
        return self.total_amount / self.step_count if self.steps else 0.0

    @property
    def nominal_interval_seconds(self) -> float:
        return self.duration_seconds / self.step_count if self.steps else 0.0

    @property
    def nominal_delay_total(self) -> float:
        return sum(step.nominal_delay_seconds for step in self.steps)


@dataclass
class TimeWeightedParams:
    """
    Time-weighted sell request.

    amount is an absolute number ("1000", 1000.0) or a percentage of
    holdings ("25%"). Give the duration as duration_minutes or hours.
    """
    amount: Union[str, float]
    duration_minutes: Optional[float] = None
    hours: Optional[float] = None
    steps: Optional[int] = None
    holdings: Optional[float] = None
    max_slippage_pct: Optional[float] = None
    jitter_pct: Optional[float] = None
    min_interval_seconds: Optional[float] = None
    wallet_address: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.duration_minutes is not None:
            return float(self.duration_minutes) * 60.0
        if self.hours is not None:
            return float(self.hours) * 3600.0
        raise ConfigurationError("Time-weighted plan requires duration_minutes or hours")


def resolve_amount(amount: Union[str, float], holdings: Optional[float]) -> float:
    """
    Resolve an absolute or percentage amount against current holdings.

    Raises:
        ConfigurationError: unparseable, non-positive, percentage outside
            (0, 100], or percentage without holdings
        EmptyHoldings: holdings are known and zero
    """
    text = str(amount).strip()
    if text.endswith("%"):
        try:
            pct = float(text[:-1])
        except ValueError:
            raise ConfigurationError(f"Invalid percentage amount: {amount!r}")
        if not (0 < pct <= 100):
            raise ConfigurationError(f"Percentage must be in (0, 100], got {pct}")
        if holdings is None:
            raise ConfigurationError("Percentage amount requires current holdings")
        if holdings <= 0:
            raise EmptyHoldings("Nothing to sell: no holdings")
        return float(holdings) * pct / 100.0

    try:
        value = float(text)
    except ValueError:
        raise ConfigurationError(f"Invalid amount: {amount!r}")
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"Amount must be positive, got {value}")
    if holdings is not None and holdings <= 0:
        raise EmptyHoldings("Nothing to sell: no holdings")
    if holdings is not None and value > holdings:
        logger.warning(f"Requested {value} but holdings are only {holdings:.6f}; using full holdings")
        value = float(holdings)
    return value


class ExecutionPlanner:
    """
    Builds execution plans from policy defaults plus per-request parameters.

    Config keys (policy.yaml):
        time_weighted: min_interval_seconds, jitter_pct, max_slippage_pct
        flash_liquidate: min_balance, sell_fraction, max_slippage_pct,
            step_delay_seconds, excluded_tokens
        tokens: base_currency_address, native_token_address
    """

    def __init__(self, policy: Optional[Dict[str, Any]] = None, rng: Optional[random.Random] = None):
        policy = policy or {}
        self.twap_config = policy.get("time_weighted", {}) or {}
        self.flash_config = policy.get("flash_liquidate", {}) or {}
        tokens = policy.get("tokens", {}) or {}

        self.base_currency_address = tokens.get("base_currency_address")
        self.native_token_address = tokens.get("native_token_address")
        self._rng = rng or random.Random()

        logger.info(
            f"ExecutionPlanner initialized: twap_min_interval={self.twap_config.get('min_interval_seconds', 30)}s, "
            f"flash_min_balance={self.flash_config.get('min_balance', 20)}"
        )

    # ===== Time-weighted =====

    def plan_time_weighted(self, params: TimeWeightedParams) -> ExecutionPlan:
        """
        Build a time-weighted plan.

        Raises:
            ConfigurationError: non-positive duration or amount, or a zero
                step count. Nothing has executed when this is raised.
            EmptyHoldings: the wallet holds none of the token
        """
        duration = params.duration_seconds
        if not math.isfinite(duration) or duration <= 0:
            raise ConfigurationError(f"Duration must be positive, got {duration}s")

        min_interval = float(self._pick(params.min_interval_seconds, self.twap_config, "min_interval_seconds", 30.0))
        if params.steps is not None:
            steps = int(params.steps)
            if steps <= 0:
                raise ConfigurationError(f"Step count must be at least 1, got {params.steps}")
        else:
            if min_interval <= 0:
                raise ConfigurationError(f"min_interval_seconds must be positive, got {min_interval}")
            steps = max(1, int(duration // min_interval))

        # Shared parameters are validated before the per-wallet amount.
        total = resolve_amount(params.amount, params.holdings)

        jitter_pct = float(self._pick(params.jitter_pct, self.twap_config, "jitter_pct", 0.0))
        jitter_pct = max(0.0, min(jitter_pct, MAX_JITTER_PCT))
        slippage = float(self._pick(params.max_slippage_pct, self.twap_config, "max_slippage_pct", 10.0))

        nominal_amount = total / steps
        nominal_delay = duration / steps

        amounts = self._jittered(nominal_amount, steps, jitter_pct)
        # Final slice absorbs rounding so the plan sums to the request.
        amounts[-1] = total - sum(amounts[:-1])
        delays = self._jittered(nominal_delay, steps, jitter_pct)

        plan = ExecutionPlan(
            kind=PlanKind.TIME_WEIGHTED,
            steps=[
                ExecutionStep(
                    index=i,
                    amount=amounts[i],
                    delay_seconds=delays[i],
                    nominal_delay_seconds=nominal_delay,
                    max_slippage_pct=slippage,
                    wallet_address=params.wallet_address,
                )
                for i in range(steps)
            ],
            total_amount=total,
            duration_seconds=duration,
        )

        logger.info(
            f"TWAP plan: total={total:.6f} steps={steps} per_step={nominal_amount:.6f} "
            f"interval={nominal_delay:.1f}s jitter={jitter_pct:.1f}% slippage<={slippage:.1f}%"
        )
        return plan

    def _jittered(self, nominal: float, count: int, jitter_pct: float) -> List[float]:
        if count <= 1 or jitter_pct <= 0 or nominal <= 0:
            return [nominal] * count
        bound = nominal * jitter_pct / 100.0
        offsets = [self._rng.uniform(-bound, bound) for _ in range(count)]
        mean = sum(offsets) / count
        return [max(nominal + (offset - mean), 0.0) for offset in offsets]

    @staticmethod
    def _pick(explicit: Any, section: Dict[str, Any], key: str, default: Any) -> Any:
        if explicit is not None:
            return explicit
        value = section.get(key)
        return default if value is None else value

    # ===== Flash liquidate =====

    def _excluded_addresses(self) -> set:
        excluded = {
            addr.lower()
            for addr in (self.base_currency_address, self.native_token_address)
            if addr
        }
        for addr in self.flash_config.get("excluded_tokens", []) or []:
            excluded.add(str(addr).lower())
        return excluded

    def plan_flash_liquidate(
        self,
        wallets: Sequence[Wallet],
        holdings: Mapping[str, Sequence[TokenHolding]],
        session: InteractionSession,
    ) -> ExecutionPlan:
        """
        Build a plan selling every sellable holding across enabled wallets.

        Args:
            wallets: Candidate wallets (disabled ones are skipped)
            holdings: Token holdings keyed by wallet address
            session: Used for the two required confirmations

        Raises:
            OperatorAborted: either confirmation was declined
        """
        min_balance = float(self.flash_config.get("min_balance", 20.0))
        sell_fraction = float(self.flash_config.get("sell_fraction", 0.9999))
        slippage = float(self.flash_config.get("max_slippage_pct", 10.0))
        step_delay = float(self.flash_config.get("step_delay_seconds", 0.0))
        if not (0 < sell_fraction <= 1):
            raise ConfigurationError(f"sell_fraction must be in (0, 1], got {sell_fraction}")

        excluded = self._excluded_addresses()
        steps: List[ExecutionStep] = []
        wallets_with_steps = 0

        for wallet in wallets:
            if not wallet.enabled:
                logger.info(f"Flash: skipping disabled wallet {wallet.label}")
                continue
            wallet_steps = 0
            for holding in holdings.get(wallet.address, []) or []:
                if holding.address.lower() in excluded:
                    logger.debug(f"Flash: {holding.symbol} excluded for {wallet.label}")
                    continue
                if holding.amount < min_balance:
                    logger.debug(f"Flash: {holding.symbol} below minimum balance ({holding.amount:.4f} < {min_balance})")
                    continue
                steps.append(
                    ExecutionStep(
                        index=len(steps),
                        amount=holding.amount * sell_fraction,
                        delay_seconds=step_delay,
                        nominal_delay_seconds=step_delay,
                        max_slippage_pct=slippage,
                        wallet_address=wallet.address,
                        token=holding,
                    )
                )
                wallet_steps += 1
            if wallet_steps:
                wallets_with_steps += 1

        plan = ExecutionPlan(
            kind=PlanKind.FLASH_LIQUIDATE,
            steps=steps,
            total_amount=sum(step.amount for step in steps),
            duration_seconds=step_delay * len(steps),
        )

        if not steps:
            logger.info("Flash: no sellable holdings found")
            return plan

        summary = f"FLASH SELL ALL: {len(steps)} token sale(s) across {wallets_with_steps} wallet(s)"
        if not session.confirm(f"{summary}. This sells every holding except reserved tokens. Continue?"):
            raise OperatorAborted("Flash liquidation declined at first confirmation")
        if not session.confirm("Are you absolutely sure? This cannot be undone."):
            raise OperatorAborted("Flash liquidation declined at second confirmation")

        logger.warning(f"{summary} confirmed")
        return plan
