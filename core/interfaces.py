"""
External collaborator interfaces.

The core never talks to chains, key stores or terminals directly; it goes
through these contracts. Concrete adapters live in infra/ and runner/.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from core.models import ResolvedWallet, SubmitResult, TokenHolding, Wallet


class WalletStore(ABC):
    """Supplies wallet records."""

    @abstractmethod
    def list_wallets(self) -> List[Wallet]:
        ...


class SecureKeyProvider(ABC):
    """Decrypts signing keys held encrypted at rest.

    Implementations may return None when a key is unavailable and may raise;
    the resolver treats both as "fall back".
    """

    @abstractmethod
    def get_private_key_by_id(self, wallet_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def get_bridging_keys(self) -> Optional[Dict[str, Optional[str]]]:
        """Returns {"solana_source_key": ..., "base_source_key": ...} or None."""
        ...


class TransactionExecutor(ABC):
    """
    Submits one signed operation.

    Contract: return within a bounded time, either a successful result or an
    explicit failure. Retries are the executor's concern.
    """

    @abstractmethod
    def submit(self, wallet: ResolvedWallet, params: Dict[str, Any]) -> SubmitResult:
        ...


class HoldingsSource(ABC):
    """Reads on-chain token balances for a wallet."""

    @abstractmethod
    def list_holdings(self, wallet_address: str) -> List[TokenHolding]:
        ...

    def get_balance(self, wallet_address: str, token_address: str) -> float:
        for holding in self.list_holdings(wallet_address):
            if holding.address.lower() == token_address.lower():
                return holding.amount
        return 0.0


class InteractionSession(ABC):
    """Operator-facing prompts, confirmations and display."""

    @abstractmethod
    def select_mode(self, options: Sequence[str], default: str) -> str:
        ...

    @abstractmethod
    def prompt(self, message: str, default: Optional[str] = None) -> str:
        ...

    @abstractmethod
    def confirm(self, message: str) -> bool:
        ...

    @abstractmethod
    def progress(self, message: str) -> None:
        ...

    @abstractmethod
    def display(self, text: str) -> None:
        ...
