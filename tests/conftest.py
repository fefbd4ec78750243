"""
Pytest configuration and fixtures for loopbot tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from tests.helpers import StubExecutor, StubSession, StubWalletStore, make_wallet, write_config


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()

    yield

    MetricsRecorder._reset_for_testing()


@pytest.fixture
def config_dir(tmp_path):
    """Valid app.yaml + policy.yaml in a temp dir."""
    return write_config(tmp_path)


@pytest.fixture
def wallets():
    return [
        make_wallet("w1", "0x" + "1" * 40, private_key="0xaaa"),
        make_wallet("w2", "0x" + "2" * 40, private_key="bbb"),
    ]


@pytest.fixture
def make_loop(config_dir, wallets):
    """Factory for a TradingLoop wired to stubs."""
    from runner.main_loop import TradingLoop

    def _make(executor=None, session=None, store=None, **kwargs):
        return TradingLoop(
            config_dir=str(config_dir),
            wallet_store=store or StubWalletStore(wallets),
            executor=executor or StubExecutor(),
            session=session or StubSession(),
            install_signal_handlers=False,
            **kwargs,
        )

    return _make
