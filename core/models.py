"""
loopbot Core: Shared data model

Wallet records, trade records and executor results passed between the
tracker, planner, resolver and orchestrator.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class TradeType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    FAILED = "failed"


class LastAction(str, Enum):
    NONE = "none"
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class Wallet:
    """
    Wallet record as supplied by the wallet store.

    Key fields are excluded from repr so a wallet can be logged safely.
    """
    id: str
    address: str
    name: Optional[str] = None
    enabled: bool = True
    private_key: Optional[str] = field(default=None, repr=False)
    encrypted_key: Optional[str] = field(default=None, repr=False)

    @property
    def label(self) -> str:
        """Human-readable identifier that never includes key material."""
        short = self.address[:8] if self.address else "?"
        return f"{self.name or self.id} ({short}...)"


@dataclass(frozen=True)
class ResolvedWallet:
    """A wallet paired with its resolved signing key (kept out of repr)."""
    wallet: Wallet
    private_key: str = field(repr=False)
    source: str = "plaintext"  # "secure" or "plaintext"

    @property
    def address(self) -> str:
        return self.wallet.address

    @property
    def label(self) -> str:
        return self.wallet.label


@dataclass(frozen=True)
class TokenHolding:
    """Token balance held by a wallet (flash-liquidate input)."""
    address: str
    symbol: str
    amount: float


@dataclass
class SubmitResult:
    """Outcome reported by a TransactionExecutor."""
    success: bool
    tx_hash: Optional[str] = None
    amount_received: Optional[float] = None
    block_number: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "SubmitResult":
        return cls(success=False, error=error)


@dataclass(frozen=True)
class TradeRecord:
    """
    Immutable entry in the process-lifetime trade log.

    For buys amount_in is currency spent and amount_out tokens received;
    for sells amount_in is tokens sold and amount_out currency received.
    Failed records carry action and reason instead of amounts.
    """
    type: TradeType
    wallet_address: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    amount_in: Optional[float] = None
    amount_out: Optional[float] = None
    price: Optional[float] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    action: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (for CSV/JSON export)"""
        d = asdict(self)
        d["type"] = self.type.value
        d["timestamp"] = self.timestamp.isoformat()
        return d
