"""
Tests for TradingLoop orchestration.

Covers market making under each mode, time-weighted abort and
cancellation, flash liquidation and flushing.
"""

import csv
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.accounting import Mode
from core.exceptions import ConfigurationError, CredentialError
from core.execution_planner import TimeWeightedParams
from core.models import SubmitResult, TokenHolding, TradeType
from infra.metrics import MetricsRecorder
from runner.main_loop import TradingLoop, main
from tests.helpers import StubExecutor, StubHoldings, StubSession, StubWalletStore, make_wallet, ok, write_config
from tests.helpers.stubs import TOKEN

W1 = "0x" + "1" * 40
W2 = "0x" + "2" * 40

FAIL = SubmitResult.failure("reverted")


def _types(loop):
    return [record.type for record in loop.tracker.trade_log]


class TestConstruction:

    def test_invalid_config_raises(self, tmp_path):
        write_config(tmp_path, policy={"market_making": {"mode": "sideways"}})
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            TradingLoop(config_dir=str(tmp_path), executor=StubExecutor(), session=StubSession(),
                        wallet_store=StubWalletStore([]), install_signal_handlers=False)

    def test_mode_override(self, make_loop):
        assert make_loop(mode="bearish").tracker.mode is Mode.BEARISH

    def test_no_usable_wallets(self, make_loop):
        loop = make_loop(store=StubWalletStore([make_wallet("w1", W1, encrypted_key="blob")]))
        with pytest.raises(CredentialError):
            loop.run_market_making(loops=1)

    def test_exclusions_reported(self, make_loop, wallets):
        session = StubSession()
        store = StubWalletStore(wallets + [make_wallet("w3", "0x" + "3" * 40, name="Cold", encrypted_key="blob")])
        report = make_loop(store=store, session=session).run_market_making(loops=1)

        assert len(report.excluded_wallets) == 1
        assert "Cold" in report.excluded_wallets[0]
        assert any("Excluding Cold" in m for m in session.progress_messages)


class TestMarketMaking:

    def test_normal_mode_buys_then_sells(self, make_loop):
        executor = StubExecutor(default=ok(received=250.0))
        loop = make_loop(executor=executor)

        report = loop.run_market_making(loops=2)

        assert report.completed == 8
        assert report.failed == 0
        assert [c["action"] for c in executor.calls[:2]] == ["buy", "sell"]
        # Sell amount comes from the tracked lot, not config.
        assert executor.calls[1]["amount"] == 250.0
        assert executor.calls[0]["token"] == TOKEN
        stats = loop.tracker.get_statistics()
        assert stats["total_buys"] == 4
        assert stats["total_sells"] == 4
        assert stats["successful_loops"] == 4

    def test_failed_buy_skips_sell(self, make_loop, wallets):
        executor = StubExecutor(results=[FAIL])
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]))

        report = loop.run_market_making(loops=1)

        assert report.failed == 1
        assert report.skipped == 1
        assert len(executor.calls) == 1
        assert _types(loop) == [TradeType.FAILED, TradeType.FAILED]
        assert "not permitted" in loop.tracker.trade_log[1].reason
        assert loop.tracker.trade_log[1].reason.startswith("skipped: ")
        assert loop.tracker.trade_log[0].reason == "buy failed: reverted"
        assert loop.tracker.get_statistics()["skipped_actions"] == 1
        assert loop.tracker.get_wallet_position(W1)["buy_history"] == []

    def test_bullish_reuses_first_buy_amount(self, make_loop, wallets):
        executor = StubExecutor()
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]), mode="bullish")
        loop.run_market_making(loops=2)
        buys = [c["amount"] for c in executor.calls if c["action"] == "buy"]
        assert buys == [10.0, 10.0]

    def test_bearish_sells_first(self, make_loop, wallets):
        executor = StubExecutor(default=ok(received=3.0))
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]), mode="bearish")

        loop.run_market_making(loops=2)

        assert [c["action"] for c in executor.calls] == ["sell", "buy", "sell", "buy"]
        assert [c["amount"] for c in executor.calls] == [500.0, 3.0, 500.0, 3.0]
        assert loop.tracker.get_wallet_position(W1)["fixed_amount"] == 500.0

    def test_executor_exception_recorded_not_raised(self, make_loop, wallets):
        executor = StubExecutor(results=[requests.exceptions.ConnectionError("reset")])
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]))

        report = loop.run_market_making(loops=1)

        assert report.failed == 1
        failure = loop.tracker.trade_log[0]
        assert failure.type is TradeType.FAILED
        assert "ConnectionError" in failure.reason

    def test_success_without_amount_recorded_as_zero(self, make_loop, wallets):
        executor = StubExecutor(default=SubmitResult(success=True, tx_hash="0x1"))
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]))
        loop.run_market_making(loops=1)
        assert loop.tracker.trade_log[0].amount_out == 0.0

    def test_rejects_zero_loops(self, make_loop):
        with pytest.raises(ConfigurationError):
            make_loop().run_market_making(loops=0)

    def test_stop_before_run_cancels_and_flushes(self, make_loop):
        session = StubSession()
        executor = StubExecutor()
        loop = make_loop(executor=executor, session=session)
        loop.stop()

        report = loop.run_market_making(loops=3)

        assert report.cancelled is True
        assert executor.calls == []
        assert any("TRADING SUMMARY" in text for text in session.displayed)


class TestTimeWeighted:

    def test_runs_all_slices_and_waits_between(self, make_loop, wallets):
        executor = StubExecutor()
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]))

        with patch.object(loop._stop_event, "wait", return_value=False) as wait:
            report = loop.run_time_weighted_sell(TimeWeightedParams(amount=1000, hours=2, steps=10))

        assert report.completed == 10
        assert report.finished
        assert sum(c["amount"] for c in executor.calls) == pytest.approx(1000)
        assert all(c["max_slippage_pct"] == 10.0 for c in executor.calls)
        # No wait after the final slice.
        assert wait.call_count == 9
        assert sum(call.args[0] for call in wait.call_args_list) == pytest.approx(7200 * 9 / 10)

    def test_aborts_after_consecutive_failures(self, make_loop, wallets):
        executor = StubExecutor(default=FAIL)
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]))

        with patch.object(loop._stop_event, "wait", return_value=False):
            report = loop.run_time_weighted_sell(TimeWeightedParams(amount=100, hours=1, steps=10))

        # Limit is 3; the fourth failure in a row exceeds it.
        assert report.aborted is True
        assert report.failed == 4
        assert "4 consecutive failures" in report.abort_reason
        assert len(executor.calls) == 4
        assert loop.tracker.get_statistics()["failed_transactions"] == 4

    def test_success_resets_failure_streak(self, make_loop, wallets):
        executor = StubExecutor(results=[FAIL, FAIL, FAIL, ok(), FAIL, FAIL, FAIL, ok()])
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]))

        with patch.object(loop._stop_event, "wait", return_value=False):
            report = loop.run_time_weighted_sell(TimeWeightedParams(amount=80, hours=1, steps=8))

        assert report.aborted is False
        assert report.completed == 2
        assert report.failed == 6

    def test_stop_during_wait_flushes(self, make_loop, wallets):
        session = StubSession()
        executor = StubExecutor()
        loop = make_loop(executor=executor, session=session, store=StubWalletStore(wallets[:1]))

        with patch.object(loop._stop_event, "wait", side_effect=[False, True]):
            report = loop.run_time_weighted_sell(TimeWeightedParams(amount=100, hours=1, steps=5))

        assert report.cancelled is True
        assert report.completed == 2
        assert len(loop.tracker.trade_log) == 2
        assert any("Cancelled" in text for text in session.displayed)
        assert MetricsRecorder().statistics_snapshot()["total_sells"] == 2

    def test_invalid_params_fail_before_any_step(self, make_loop):
        executor = StubExecutor()
        with pytest.raises(ConfigurationError):
            make_loop(executor=executor).run_time_weighted_sell(TimeWeightedParams(amount=100, hours=1, steps=0))
        assert executor.calls == []

    def test_percentage_uses_holdings(self, make_loop, wallets):
        executor = StubExecutor()
        holdings = StubHoldings({W1: [TokenHolding(address=TOKEN, symbol="TKN", amount=400)]})
        loop = make_loop(executor=executor, store=StubWalletStore(wallets[:1]), holdings_source=holdings)

        with patch.object(loop._stop_event, "wait", return_value=False):
            loop.run_time_weighted_sell(TimeWeightedParams(amount="50%", hours=1, steps=4))

        assert sum(c["amount"] for c in executor.calls) == pytest.approx(200)

    def test_empty_wallet_excluded_others_run(self, make_loop):
        executor = StubExecutor()
        holdings = StubHoldings({W1: [TokenHolding(address=TOKEN, symbol="TKN", amount=1000)], W2: []})
        session = StubSession()
        loop = make_loop(executor=executor, session=session, holdings_source=holdings)

        with patch.object(loop._stop_event, "wait", return_value=False):
            report = loop.run_time_weighted_sell(TimeWeightedParams(amount="50%", hours=1, steps=2))

        assert report.completed == 2
        assert report.total_steps == 2
        assert [c["wallet"] for c in executor.calls] == [W1, W1]
        assert sum(c["amount"] for c in executor.calls) == pytest.approx(500)
        assert len(report.excluded_wallets) == 1
        assert report.excluded_wallets[0].startswith("w2")
        assert "Nothing to sell" in report.excluded_wallets[0]
        assert any("Skipping w2" in message for message in session.progress_messages)


class TestFlashLiquidate:

    def _holdings(self):
        return StubHoldings({
            W1: [TokenHolding(address="0x" + "a" * 40, symbol="AAA", amount=100),
                 TokenHolding(address="0x" + "b" * 40, symbol="BBB", amount=300)],
            W2: [TokenHolding(address="0x" + "c" * 40, symbol="CCC", amount=50)],
        })

    def test_every_step_attempted_even_when_all_fail(self, make_loop):
        executor = StubExecutor(default=FAIL)
        session = StubSession(confirmations=[True, True])
        loop = make_loop(executor=executor, session=session, holdings_source=self._holdings())

        report = loop.run_flash_liquidate()

        assert report.total_steps == 3
        assert report.failed == 3
        assert report.aborted is False
        assert [c["token"] for c in executor.calls] == ["0x" + "a" * 40, "0x" + "b" * 40, "0x" + "c" * 40]
        assert _types(loop) == [TradeType.FAILED] * 3

    def test_declined_confirmation(self, make_loop):
        executor = StubExecutor()
        loop = make_loop(executor=executor, session=StubSession(confirmations=[True, False]),
                         holdings_source=self._holdings())

        report = loop.run_flash_liquidate()

        assert report.aborted is True
        assert "second confirmation" in report.abort_reason
        assert executor.calls == []

    def test_holdings_failure_skips_wallet(self, make_loop):
        holdings = self._holdings()
        holdings.failing.add(W1)
        executor = StubExecutor()
        loop = make_loop(executor=executor, session=StubSession(confirmations=[True, True]),
                         holdings_source=holdings)

        report = loop.run_flash_liquidate()

        assert report.completed == 1
        assert [c["wallet"] for c in executor.calls] == [W2]
        assert any("holdings unavailable" in entry for entry in report.excluded_wallets)

    def test_requires_holdings_source(self, make_loop):
        loop = make_loop()
        with pytest.raises(ConfigurationError):
            loop.run_flash_liquidate()


class TestImmediateSell:

    def test_sells_once_per_wallet(self, make_loop):
        executor = StubExecutor()
        report = make_loop(executor=executor).run_immediate_sell("25")
        assert report.completed == 2
        assert [c["amount"] for c in executor.calls] == [25.0, 25.0]

    def test_percentage_without_holdings_rejected(self, make_loop):
        with pytest.raises(ConfigurationError):
            make_loop().run_immediate_sell("10%")

    def test_empty_wallet_excluded(self, make_loop):
        executor = StubExecutor()
        holdings = StubHoldings({W1: [TokenHolding(address=TOKEN, symbol="TKN", amount=1000)]})
        loop = make_loop(executor=executor, holdings_source=holdings)

        report = loop.run_immediate_sell("100")

        assert report.total_steps == 1
        assert report.completed == 1
        assert [(c["wallet"], c["amount"]) for c in executor.calls] == [(W1, 100.0)]
        assert any(entry.startswith("w2") for entry in report.excluded_wallets)


class TestFlush:

    def test_trade_log_exported(self, tmp_path, wallets):
        export_dir = tmp_path / "exports"
        config_dir = write_config(tmp_path / "cfg", app={"reporting": {"export_dir": str(export_dir), "format": "jsonl"}})
        loop = TradingLoop(config_dir=str(config_dir), wallet_store=StubWalletStore(wallets[:1]),
                           executor=StubExecutor(), session=StubSession(), install_signal_handlers=False)

        loop.run_market_making(loops=1)

        files = list(export_dir.glob("trades_*.jsonl"))
        assert len(files) == 1
        assert len(files[0].read_text().splitlines()) == 2

    def test_consecutive_runs_export_each_record_once(self, tmp_path, wallets):
        export_dir = tmp_path / "exports"
        config_dir = write_config(tmp_path / "cfg", app={"reporting": {"export_dir": str(export_dir), "format": "csv"}})
        loop = TradingLoop(config_dir=str(config_dir), wallet_store=StubWalletStore(wallets[:1]),
                           executor=StubExecutor(), session=StubSession(), install_signal_handlers=False)

        loop.run_market_making(loops=1)
        loop.run_immediate_sell(5)

        files = list(export_dir.glob("trades_*.csv"))
        assert len(files) == 1
        with open(files[0], newline="") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == len(loop.tracker.trade_log) == 3
        assert [row["type"] for row in rows] == ["buy", "sell", "sell"]

    def test_failed_export_retried_on_next_flush(self, tmp_path, wallets):
        export_dir = tmp_path / "exports"
        config_dir = write_config(tmp_path / "cfg", app={"reporting": {"export_dir": str(export_dir), "format": "jsonl"}})
        loop = TradingLoop(config_dir=str(config_dir), wallet_store=StubWalletStore(wallets[:1]),
                           executor=StubExecutor(), session=StubSession(), install_signal_handlers=False)

        with patch.object(loop.exporter, "export", side_effect=OSError("disk full")):
            loop.run_market_making(loops=1)
        loop.run_immediate_sell(5)

        lines = list(export_dir.glob("trades_*.jsonl"))[0].read_text().splitlines()
        assert len(lines) == 3

    def test_statistics_pushed_to_metrics(self, make_loop):
        loop = make_loop()
        loop.run_market_making(loops=1)
        assert MetricsRecorder().statistics_snapshot()["successful_loops"] == 2


class TestSignals:

    def test_handle_stop_sets_event(self, make_loop):
        loop = make_loop()
        loop._handle_stop(2, None)
        assert loop.stopping

    def test_signal_handlers_installed(self, config_dir, wallets):
        with patch("runner.main_loop.signal.signal") as install:
            TradingLoop(config_dir=str(config_dir), wallet_store=StubWalletStore(wallets),
                        executor=StubExecutor(), session=StubSession())
        assert install.call_count == 2


class TestCli:

    def test_config_error_exit_code(self, tmp_path, capsys):
        write_config(tmp_path, policy={"market_making": {"buy_amount": -1}})
        assert main(["--config-dir", str(tmp_path), "mm"]) == 2
        assert "Invalid configuration" in capsys.readouterr().out

    def test_dispatches_twap(self, config_dir):
        loop = MagicMock()
        loop.run_time_weighted_sell.return_value = MagicMock(aborted=False)
        with patch("runner.main_loop.TradingLoop", return_value=loop):
            assert main(["--config-dir", str(config_dir), "twap", "--amount", "25%", "--hours", "2"]) == 0
        params = loop.run_time_weighted_sell.call_args.args[0]
        assert params.amount == "25%"
        assert params.hours == 2
