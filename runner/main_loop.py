"""
loopbot Runner: Main Loop

Orchestrates market-making loops and bulk sells across wallets.

Flow:
1. Validate and load config (app.yaml, policy.yaml)
2. Load wallets and resolve signing credentials (unresolvable wallets are
   excluded and reported)
3. Run one of:
   - market making: buy/sell loops gated by the tracker's next action
   - time-weighted sell: planned slices with waits between them
   - flash liquidate: sell every sellable holding after two confirmations
   - immediate sell: one sell per wallet
4. Flush: summary to the operator and the log, statistics to metrics,
   optional trade-log export

Cancellation (SIGINT/SIGTERM or stop()) is observed between steps and at
every wait; the run flushes before returning.
"""

import logging
import signal
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from analytics.performance_report import ExecutionReport, format_execution_report, format_tracker_summary
from analytics.trade_log import TradeLogExporter
from core.accounting import BearishAction, BullishAction, Mode
from core.credentials import BRIDGING_SLOTS, BridgingCredentials, CredentialResolver
from core.exceptions import (
    ConfigurationError,
    CredentialError,
    EmptyHoldings,
    OperatorAborted,
    StateInvariantViolation,
    TransactionFailure,
)
from core.execution_planner import ExecutionPlan, ExecutionPlanner, TimeWeightedParams, resolve_amount
from core.interfaces import (
    HoldingsSource,
    InteractionSession,
    SecureKeyProvider,
    TransactionExecutor,
    WalletStore,
)
from core.models import ResolvedWallet, SubmitResult
from core.position_tracker import PositionTracker
from infra.metrics import MetricsRecorder, PlanProgress

logger = logging.getLogger(__name__)


class TradingLoop:
    """
    Main orchestrator.

    Responsibilities:
    - Load and validate config
    - Resolve wallet credentials and report exclusions
    - Drive market-making loops and bulk-sell plans
    - Record every outcome on the PositionTracker
    - Flush summaries on completion or cancellation
    """

    def __init__(
        self,
        config_dir: str = "config",
        mode: Optional[Union[str, Mode]] = None,
        wallet_store: Optional[WalletStore] = None,
        executor: Optional[TransactionExecutor] = None,
        holdings_source: Optional[HoldingsSource] = None,
        session: Optional[InteractionSession] = None,
        key_provider: Optional[SecureKeyProvider] = None,
        install_signal_handlers: bool = True,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ConfigurationError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        # Logging setup
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/loopbot.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

        self.mm_config = self.policy_config.get("market_making", {}) or {}
        self.twap_config = self.policy_config.get("time_weighted", {}) or {}
        self.flash_config = self.policy_config.get("flash_liquidate", {}) or {}
        self.immediate_config = self.policy_config.get("immediate", {}) or {}
        self.token_address = (self.policy_config.get("tokens", {}) or {}).get("token_address")

        self.tracker = PositionTracker(mode if mode is not None else self.mm_config.get("mode", "normal"))
        self.planner = ExecutionPlanner(self.policy_config)
        self.resolver = CredentialResolver(key_provider)

        if wallet_store is None:
            from infra.wallet_store import YamlWalletStore
            wallet_store = YamlWalletStore((self.app_config.get("wallets", {}) or {}).get("file", "config/wallets.yaml"))
        self.wallet_store = wallet_store

        if executor is None:
            from infra.executor_client import HttpTransactionExecutor
            executor = HttpTransactionExecutor.from_config(self.app_config.get("executor"))
        self.executor = executor
        if holdings_source is None and isinstance(executor, HoldingsSource):
            holdings_source = executor
        self.holdings_source = holdings_source

        if session is None:
            from runner.console_session import ConsoleSession
            session = ConsoleSession()
        self.session = session

        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()

        reporting_cfg = self.app_config.get("reporting", {}) or {}
        export_dir = reporting_cfg.get("export_dir")
        self.exporter = TradeLogExporter(export_dir, reporting_cfg.get("format", "csv")) if export_dir else None

        self._excluded: List[str] = []
        self._exported = 0

        # Shutdown flag
        self._stop_event = threading.Event()
        if install_signal_handlers and threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(
            f"Initialized TradingLoop: mode={self.tracker.mode.value}, "
            f"secure_keys={'yes' if self.resolver.has_secure_provider else 'no'}"
        )

    def _load_yaml(self, filename: str) -> dict:
        with open(self.config_dir / filename) as f:
            return yaml.safe_load(f) or {}

    # ===== Shutdown =====

    def _handle_stop(self, *_):
        """Signal handler: stop at the next step boundary or wait."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - finishing current step and flushing")
        logger.warning("=" * 80)
        self.stop()

    def stop(self) -> None:
        """Request cancellation. The active run flushes before returning."""
        if not self._stop_event.is_set():
            logger.info("Stop requested")
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _wait(self, seconds: float) -> bool:
        """Wait up to seconds. Returns True if a stop was requested meanwhile."""
        if seconds <= 0:
            return self._stop_event.is_set()
        return self._stop_event.wait(seconds)

    # ===== Wallets & credentials =====

    def _load_wallets(self) -> List[ResolvedWallet]:
        """
        Load wallets and resolve their keys.

        Raises:
            CredentialError: if no enabled wallet has a usable key
        """
        wallets = self.wallet_store.list_wallets()
        resolved, exclusions = self.resolver.resolve_wallets(wallets)

        self._excluded = [f"{item.wallet.label}: {item.reason}" for item in exclusions]
        for entry in self._excluded:
            self.session.progress(f"⚠️ Excluding {entry}")
        self.metrics.record_excluded_wallets(len(exclusions))

        if not resolved:
            raise CredentialError(None, "no enabled wallet has a usable signing key")

        logger.info(f"{len(resolved)} wallet(s) ready, {len(exclusions)} excluded")
        return resolved

    def resolve_bridging(self) -> BridgingCredentials:
        """Resolve bridging keys (secure provider first, then app.yaml)."""
        return self.resolver.resolve_bridging_credentials(self.app_config.get("bridging"))

    def _exclude(self, wallet: ResolvedWallet, reason: str) -> None:
        entry = f"{wallet.label}: {reason}"
        logger.warning(f"Excluding {entry}")
        self._excluded.append(entry)
        self.session.progress(f"⚠️ Skipping {entry}")
        self.metrics.record_excluded_wallets(len(self._excluded))

    # ===== Submission =====

    def _submit(self, wallet: ResolvedWallet, action: str, params: Dict[str, Any]) -> Optional[SubmitResult]:
        """
        Submit one operation. Failures are recorded on the tracker.

        Returns:
            The successful result, or None if the submission failed
        """
        payload = dict(params, action=action)
        if self.token_address and "token" not in payload:
            payload["token"] = self.token_address

        try:
            result = self.executor.submit(wallet, payload)
        except Exception as e:
            failure = TransactionFailure(action, f"executor error: {type(e).__name__}: {e}", original=e)
        else:
            if result.success:
                return result
            failure = TransactionFailure(action, result.error or "executor reported failure")

        self.tracker.track_failure(wallet.address, action, str(failure))
        self.metrics.record_failure(action)
        self.session.progress(f"❌ {wallet.label}: {failure}")
        return None

    @staticmethod
    def _meta(result: SubmitResult) -> Dict[str, Any]:
        return {"tx_hash": result.tx_hash, "block_number": result.block_number}

    @staticmethod
    def _received(wallet: ResolvedWallet, action: str, result: SubmitResult) -> float:
        if result.amount_received is None:
            logger.warning(f"{action} for {wallet.label} succeeded without an amount_received; recording 0")
            return 0.0
        return result.amount_received

    def _sell(self, wallet: ResolvedWallet, amount: float, slippage: float, extra: Optional[Dict[str, Any]] = None) -> bool:
        params = {"amount": amount, "max_slippage_pct": slippage}
        params.update(extra or {})
        result = self._submit(wallet, "sell", params)
        if result is None:
            return False
        self.tracker.track_sell(wallet.address, amount, self._received(wallet, "sell", result), self._meta(result))
        self.metrics.record_trade("sell")
        return True

    # ===== Market making =====

    def _mm_buy(self, wallet: ResolvedWallet, report: ExecutionReport) -> None:
        action = self.tracker.get_next_action(wallet.address)
        if not action.can_buy:
            violation = StateInvariantViolation(wallet.address, "buy", self.tracker.mode.value)
            self.tracker.track_failure(wallet.address, "buy", str(violation), skipped=True)
            report.skipped += 1
            return

        amount = None
        if isinstance(action, (BullishAction, BearishAction)):
            amount = action.buy_amount
        if amount is None:
            amount = float(self.mm_config["buy_amount"])

        result = self._submit(wallet, "buy", {
            "amount": amount,
            "max_slippage_pct": float(self.mm_config.get("max_slippage_pct", 10.0)),
        })
        if result is None:
            report.failed += 1
            return
        self.tracker.track_buy(wallet.address, amount, self._received(wallet, "buy", result), self._meta(result))
        self.metrics.record_trade("buy", amount)
        report.completed += 1

    def _mm_sell(self, wallet: ResolvedWallet, report: ExecutionReport) -> None:
        action = self.tracker.get_next_action(wallet.address)
        amount = action.sell_amount
        if amount is None:
            amount = self.mm_config.get("sell_amount")
        if not action.can_sell or amount is None:
            violation = StateInvariantViolation(wallet.address, "sell", self.tracker.mode.value)
            self.tracker.track_failure(wallet.address, "sell", str(violation), skipped=True)
            report.skipped += 1
            return

        if self._sell(wallet, float(amount), float(self.mm_config.get("max_slippage_pct", 10.0))):
            report.completed += 1
        else:
            report.failed += 1

    def run_market_making(self, loops: Optional[int] = None) -> ExecutionReport:
        """
        Run buy/sell loops over every resolved wallet.

        Normal and bullish modes buy then sell; bearish sells then buys.

        Args:
            loops: Number of loops (default market_making.loops; None runs
                until stopped)
        """
        if loops is None:
            loops = self.mm_config.get("loops")
        if loops is not None and int(loops) < 1:
            raise ConfigurationError(f"loops must be at least 1, got {loops}")
        wallets = self._load_wallets()

        report = ExecutionReport(
            kind="market_making",
            total_steps=int(loops) * len(wallets) * 2 if loops is not None else 0,
            excluded_wallets=list(self._excluded),
        )
        order = (self._mm_sell, self._mm_buy) if self.tracker.mode is Mode.BEARISH else (self._mm_buy, self._mm_sell)
        delay = float(self.mm_config.get("loop_delay_seconds", 0.0))

        logger.info(f"Starting market making: loops={loops or 'unbounded'}, wallets={len(wallets)}")
        try:
            loop_index = 0
            while loops is None or loop_index < int(loops):
                loop_index += 1
                for wallet in wallets:
                    for step in order:
                        if self.stopping:
                            report.cancelled = True
                            return report
                        step(wallet, report)
                self.session.progress(f"Loop {loop_index} done ({report.completed} ok, {report.failed} failed)")
                if loops is not None and loop_index >= int(loops):
                    break
                if self._wait(delay):
                    report.cancelled = True
                    return report
            return report
        finally:
            if loops is None:
                report.total_steps = report.attempted + report.skipped
            self._flush(report)

    # ===== Time-weighted =====

    def _holdings_for(self, wallet: ResolvedWallet) -> Optional[float]:
        if self.holdings_source is None or not self.token_address:
            return None
        return self.holdings_source.get_balance(wallet.address, self.token_address)

    def run_time_weighted_sell(self, params: TimeWeightedParams) -> ExecutionReport:
        """
        Sell params.amount per wallet in slices spread over the duration.

        Every wallet's plan is built before any slice runs, so a bad
        parameter fails the whole run up front. A wallet holding none of
        the token is excluded and the others still run. Slices run
        strictly in order; the run aborts once consecutive failures exceed
        time_weighted.max_consecutive_failures.

        Raises:
            ConfigurationError: invalid duration, amount or step count
        """
        wallets = self._load_wallets()

        plans = []
        for wallet in wallets:
            wallet_params = TimeWeightedParams(
                amount=params.amount,
                duration_minutes=params.duration_minutes,
                hours=params.hours,
                steps=params.steps,
                holdings=params.holdings if params.holdings is not None else self._holdings_for(wallet),
                max_slippage_pct=params.max_slippage_pct,
                jitter_pct=params.jitter_pct,
                min_interval_seconds=params.min_interval_seconds,
                wallet_address=wallet.address,
            )
            try:
                plans.append((wallet, self.planner.plan_time_weighted(wallet_params)))
            except EmptyHoldings as e:
                self._exclude(wallet, str(e))

        max_failures = int(self.twap_config.get("max_consecutive_failures", 3))
        report = ExecutionReport(
            kind="time_weighted",
            total_steps=sum(plan.step_count for _, plan in plans),
            excluded_wallets=list(self._excluded),
        )

        try:
            for wallet, plan in plans:
                self.session.progress(
                    f"TWAP {wallet.label}: {plan.total_amount:.6f} in {plan.step_count} slice(s) "
                    f"over {plan.duration_seconds / 60:.1f} min"
                )
                if not self._run_twap_plan(wallet, plan, report, max_failures):
                    break
            return report
        finally:
            self._flush(report)

    def _run_twap_plan(self, wallet: ResolvedWallet, plan: ExecutionPlan, report: ExecutionReport, max_failures: int) -> bool:
        """Execute one wallet's slices. Returns False when the run must end."""
        consecutive_failures = 0

        for step in plan.steps:
            if self.stopping:
                report.cancelled = True
                return False

            ok = self._sell(wallet, step.amount, step.max_slippage_pct, {"step": step.index + 1, "steps": plan.step_count})
            if ok:
                report.completed += 1
                consecutive_failures = 0
                self.session.progress(f"✅ Slice {step.index + 1}/{plan.step_count}: sold {step.amount:.6f}")
            else:
                report.failed += 1
                consecutive_failures += 1

            self.metrics.record_plan_progress(
                PlanProgress(kind=plan.kind.value, completed=report.completed, failed=report.failed, total=report.total_steps)
            )

            if consecutive_failures > max_failures:
                report.aborted = True
                report.abort_reason = (
                    f"{consecutive_failures} consecutive failures on {wallet.label} "
                    f"(limit {max_failures})"
                )
                logger.error(f"TWAP aborted: {report.abort_reason}")
                return False

            if step.index < plan.step_count - 1:
                logger.info(f"Waiting {step.delay_seconds:.1f}s before slice {step.index + 2}/{plan.step_count}")
                if self._wait(step.delay_seconds):
                    report.cancelled = True
                    return False

        return True

    # ===== Flash liquidate =====

    def run_flash_liquidate(self) -> ExecutionReport:
        """
        Sell every sellable holding of every resolved wallet.

        Requires two confirmations. Every step is attempted regardless of
        failures; only a stop request ends the run early.
        """
        if self.holdings_source is None:
            raise ConfigurationError("Flash liquidation requires a holdings source")
        wallets = self._load_wallets()
        by_address = {wallet.address: wallet for wallet in wallets}

        holdings = {}
        for wallet in wallets:
            try:
                holdings[wallet.address] = self.holdings_source.list_holdings(wallet.address)
            except Exception as e:
                logger.error(f"Failed to read holdings for {wallet.label}: {e}")
                self._excluded.append(f"{wallet.label}: holdings unavailable")
                self.session.progress(f"⚠️ Skipping {wallet.label}: holdings unavailable")

        report = ExecutionReport(kind="flash_liquidate", total_steps=0, excluded_wallets=list(self._excluded))
        try:
            try:
                plan = self.planner.plan_flash_liquidate([w.wallet for w in wallets], holdings, self.session)
            except OperatorAborted as e:
                report.aborted = True
                report.abort_reason = str(e)
                logger.warning(f"Flash liquidation aborted by operator: {e}")
                return report

            report.total_steps = plan.step_count
            for step in plan.steps:
                if self.stopping:
                    report.cancelled = True
                    return report

                wallet = by_address[step.wallet_address]
                token = step.token
                ok = self._sell(wallet, step.amount, step.max_slippage_pct, {"token": token.address})
                if ok:
                    report.completed += 1
                    self.session.progress(f"✅ {wallet.label}: sold {step.amount:.4f} {token.symbol}")
                else:
                    report.failed += 1

                self.metrics.record_plan_progress(
                    PlanProgress(kind=plan.kind.value, completed=report.completed, failed=report.failed, total=report.total_steps)
                )
                if step.index < plan.step_count - 1 and self._wait(step.delay_seconds):
                    report.cancelled = True
                    return report
            return report
        finally:
            self._flush(report)

    # ===== Immediate =====

    def run_immediate_sell(self, amount: Union[str, float]) -> ExecutionReport:
        """
        Sell amount (absolute or "N%" of holdings) from each wallet at once.

        Wallets holding none of the token are excluded.

        Raises:
            ConfigurationError: amount invalid for any wallet
        """
        wallets = self._load_wallets()
        slippage = float(self.immediate_config.get("max_slippage_pct", 10.0))
        orders = []
        for wallet in wallets:
            try:
                orders.append((wallet, resolve_amount(amount, self._holdings_for(wallet))))
            except EmptyHoldings as e:
                self._exclude(wallet, str(e))

        report = ExecutionReport(kind="immediate", total_steps=len(orders), excluded_wallets=list(self._excluded))
        try:
            for wallet, value in orders:
                if self.stopping:
                    report.cancelled = True
                    return report
                if self._sell(wallet, value, slippage):
                    report.completed += 1
                    self.session.progress(f"✅ {wallet.label}: sold {value:.6f}")
                else:
                    report.failed += 1
            return report
        finally:
            self._flush(report)

    # ===== Flush =====

    def _flush(self, report: Optional[ExecutionReport] = None) -> None:
        """Publish the summary, statistics and trade log."""
        summary = format_tracker_summary(self.tracker)
        if report is not None:
            summary = format_execution_report(report) + "\n" + summary

        for line in summary.splitlines():
            logger.info(line)
        self.session.display(summary)

        self.metrics.record_statistics(self.tracker.get_statistics())

        if self.exporter is not None:
            trade_log = self.tracker.trade_log
            if self._exported > len(trade_log):
                # Tracker was reset since the last flush.
                self._exported = 0
            pending = trade_log[self._exported:]
            try:
                self.exporter.export(pending)
            except OSError as e:
                logger.error(f"Trade log export failed: {e}")
            else:
                self._exported += len(pending)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="loopbot multi-wallet trading loops")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    sub = parser.add_subparsers(dest="command", required=True)

    mm = sub.add_parser("mm", help="Run market-making loops")
    mm.add_argument("--loops", type=int, default=None, help="Loops to run (default: policy.yaml)")
    mm.add_argument("--mode", choices=[m.value for m in Mode], default=None, help="Accounting mode override")
    mm.add_argument("--choose-mode", action="store_true", help="Pick the mode interactively")

    twap = sub.add_parser("twap", help="Time-weighted sell")
    twap.add_argument("--amount", required=True, help="Tokens per wallet, or N%% of holdings")
    duration = twap.add_mutually_exclusive_group(required=True)
    duration.add_argument("--minutes", type=float, help="Duration in minutes")
    duration.add_argument("--hours", type=float, help="Duration in hours")
    twap.add_argument("--steps", type=int, default=None, help="Slice count (default: from min interval)")
    twap.add_argument("--jitter-pct", type=float, default=None, help="Jitter %% (default: policy.yaml)")

    sub.add_parser("flash", help="Sell all holdings except reserved tokens")

    sell = sub.add_parser("sell", help="Immediate sell")
    sell.add_argument("--amount", required=True, help="Tokens per wallet, or N%% of holdings")

    sub.add_parser("bridge-check", help="Report which bridging key slots resolve")

    args = parser.parse_args(argv)

    try:
        mode = getattr(args, "mode", None)
        if getattr(args, "choose_mode", False):
            from runner.console_session import ConsoleSession
            mode = ConsoleSession().select_mode([m.value for m in Mode], default=mode or Mode.NORMAL.value)

        # Logging configured in __init__
        loop = TradingLoop(config_dir=args.config_dir, mode=mode)

        if args.command == "mm":
            report = loop.run_market_making(loops=args.loops)
        elif args.command == "twap":
            report = loop.run_time_weighted_sell(
                TimeWeightedParams(
                    amount=args.amount,
                    duration_minutes=args.minutes,
                    hours=args.hours,
                    steps=args.steps,
                    jitter_pct=args.jitter_pct,
                )
            )
        elif args.command == "flash":
            report = loop.run_flash_liquidate()
        elif args.command == "sell":
            report = loop.run_immediate_sell(args.amount)
        else:
            creds = loop.resolve_bridging()
            for slot in BRIDGING_SLOTS:
                status = "available" if getattr(creds, slot) else "missing"
                print(f"{slot}: {status}")
            return 0
    except (ConfigurationError, CredentialError) as e:
        logger.error(str(e))
        print(f"\n❌ {e}\n")
        return 2

    return 1 if report.aborted else 0


if __name__ == "__main__":
    raise SystemExit(main())
