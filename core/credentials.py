"""
loopbot Core: Credential resolution

Resolves the signing key for each wallet, and the two auxiliary bridging
keys, in a fixed two-tier order:

1. the injected SecureKeyProvider (decrypts keys held encrypted at rest)
2. the plaintext key stored on the record

A wallet with neither is excluded from the run. Decrypted keys live only in
process memory; nothing here writes or logs key material, only wallet
names, ids and shortened addresses.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.exceptions import CredentialError
from core.interfaces import SecureKeyProvider
from core.models import ResolvedWallet, Wallet

logger = logging.getLogger(__name__)

BRIDGING_SLOTS = ("solana_source_key", "base_source_key")


@dataclass(frozen=True)
class Exclusion:
    """A wallet left out of the run and why."""
    wallet: Wallet
    reason: str


@dataclass(frozen=True)
class BridgingCredentials:
    """Cross-chain bridging keys. Each slot resolves independently."""
    solana_source_key: Optional[str] = field(default=None, repr=False)
    base_source_key: Optional[str] = field(default=None, repr=False)
    sol_wallet_address: Optional[str] = None

    def require(self, slot: str) -> str:
        if slot not in BRIDGING_SLOTS:
            raise KeyError(slot)
        value = getattr(self, slot)
        if not value:
            raise CredentialError("bridging", f"no key available for {slot}")
        return value


def normalize_key(key: str) -> str:
    """Strip whitespace and ensure a 0x prefix (EVM hex keys)."""
    key = key.strip()
    if key.startswith("0x") or key.startswith("0X"):
        return "0x" + key[2:]
    return f"0x{key}"


class CredentialResolver:
    """
    Resolves wallet signing keys.

    The secure-key capability is passed in; nothing is looked up from
    global state. Without a provider only plaintext keys resolve.
    """

    def __init__(self, secure_provider: Optional[SecureKeyProvider] = None):
        self._provider = secure_provider
        logger.info(f"CredentialResolver initialized (secure_provider={'yes' if secure_provider else 'no'})")

    @property
    def has_secure_provider(self) -> bool:
        return self._provider is not None

    def _secure_key(self, wallet: Wallet) -> Optional[str]:
        if self._provider is None or not wallet.id:
            return None
        try:
            key = self._provider.get_private_key_by_id(wallet.id)
        except Exception as exc:
            # Provider errors fall through to the plaintext tier.
            logger.error(f"Secure key lookup failed for wallet {wallet.label}: {type(exc).__name__}")
            return None
        return key or None

    def resolve_credential(self, wallet: Wallet) -> str:
        """
        Resolve the signing key for one wallet.

        Returns:
            Normalized private key

        Raises:
            CredentialError: neither the secure provider nor a plaintext
                field produced a key
        """
        key, _ = self._resolve(wallet)
        return key

    def _resolve(self, wallet: Wallet) -> Tuple[str, str]:
        secure = self._secure_key(wallet)
        if secure:
            logger.info(f"Using securely decrypted key for wallet {wallet.label}")
            return normalize_key(secure), "secure"

        if wallet.private_key and wallet.private_key.strip():
            logger.debug(f"Using plaintext key for wallet {wallet.label}")
            return normalize_key(wallet.private_key), "plaintext"

        if wallet.encrypted_key:
            reason = (
                "key is encrypted at rest and no secure key provider could decrypt it"
                if self._provider is None
                else "secure key provider returned no key and no plaintext fallback exists"
            )
        else:
            reason = "no private key configured"
        raise CredentialError(wallet.id, reason)

    def resolve_wallets(self, wallets: Iterable[Wallet]) -> Tuple[List[ResolvedWallet], List[Exclusion]]:
        """
        Resolve every enabled wallet.

        Disabled wallets and wallets without a usable key come back as
        exclusions; this never raises CredentialError.
        """
        resolved: List[ResolvedWallet] = []
        excluded: List[Exclusion] = []

        for wallet in wallets:
            if not wallet.enabled:
                excluded.append(Exclusion(wallet, "wallet disabled"))
                continue
            try:
                key, source = self._resolve(wallet)
            except CredentialError as exc:
                logger.warning(f"Excluding wallet {wallet.label}: {exc.reason}")
                excluded.append(Exclusion(wallet, exc.reason))
                continue
            resolved.append(ResolvedWallet(wallet=wallet, private_key=key, source=source))

        logger.info(f"Resolved {len(resolved)} wallet(s), excluded {len(excluded)}")
        return resolved, excluded

    def resolve_bridging_credentials(self, bridging_config: Optional[Dict[str, Any]]) -> BridgingCredentials:
        """
        Resolve the two bridging key slots.

        Args:
            bridging_config: Plaintext fallbacks, keys solana_source_private_key,
                base_source_private_key and sol_wallet_address

        Raises:
            CredentialError: neither slot could be resolved
        """
        bridging_config = bridging_config or {}
        values: Dict[str, Optional[str]] = {
            "solana_source_key": bridging_config.get("solana_source_private_key") or None,
            "base_source_key": bridging_config.get("base_source_private_key") or None,
        }

        if self._provider is not None:
            try:
                secure_keys = self._provider.get_bridging_keys()
            except Exception as exc:
                logger.error(f"Secure bridging key lookup failed: {type(exc).__name__}")
                secure_keys = None
            if secure_keys:
                for slot in BRIDGING_SLOTS:
                    if secure_keys.get(slot):
                        values[slot] = secure_keys[slot]
                logger.info("Using securely decrypted bridging keys")

        if not any(values.values()):
            raise CredentialError("bridging", "no bridging keys available from secure provider or config")

        missing = [slot for slot, value in values.items() if not value]
        if missing:
            logger.warning(f"Bridging credentials incomplete: missing {', '.join(missing)}")

        return BridgingCredentials(
            solana_source_key=values["solana_source_key"],
            base_source_key=values["base_source_key"],
            sol_wallet_address=bridging_config.get("sol_wallet_address"),
        )
