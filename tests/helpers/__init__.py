"""Test helpers for loopbot test suite"""

from tests.helpers.stubs import (
    StubExecutor,
    StubHoldings,
    StubKeyProvider,
    StubSession,
    StubWalletStore,
    make_wallet,
    ok,
    write_config,
)

__all__ = [
    "StubExecutor",
    "StubHoldings",
    "StubKeyProvider",
    "StubSession",
    "StubWalletStore",
    "make_wallet",
    "ok",
    "write_config",
]
