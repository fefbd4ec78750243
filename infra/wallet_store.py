"""
YAML-backed wallet store.

File format (config/wallets.yaml):

    wallets:
      - id: "w1"
        name: "Main"
        address: "0xabc..."
        enabled: true
        private_key: "${WALLET_W1_KEY}"   # optional, expanded from env
        encrypted_key: "..."              # optional opaque blob

Plaintext keys are better supplied via ${ENV_VAR} references than written
into the file. Unset variables expand to nothing (treated as no key).
"""

import logging
import os
import re
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.exceptions import ConfigurationError
from core.interfaces import WalletStore
from core.models import Wallet

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _expand_env(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    expanded = _ENV_REF.sub(lambda m: os.getenv(m.group(1), ""), value).strip()
    return expanded or None


class WalletRecord(BaseModel):
    """Wallet entry in wallets.yaml"""
    id: str = Field(min_length=1, description="Opaque wallet identifier")
    name: Optional[str] = Field(default=None, description="Display name")
    address: str = Field(description="EVM address")
    enabled: bool = Field(default=True, description="Include wallet in runs")
    private_key: Optional[str] = Field(default=None, repr=False, description="Plaintext key or ${ENV} reference")
    encrypted_key: Optional[str] = Field(default=None, repr=False, description="Opaque encrypted blob")

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not _ADDRESS.match(v):
            raise ValueError(f"invalid address {v[:10]}...")
        return v


class WalletFile(BaseModel):
    wallets: List[WalletRecord] = Field(default_factory=list)

    @field_validator("wallets")
    @classmethod
    def validate_unique(cls, v: List[WalletRecord]) -> List[WalletRecord]:
        seen = set()
        for record in v:
            key = record.address.lower()
            if key in seen:
                raise ValueError(f"duplicate wallet address {record.address[:10]}...")
            seen.add(key)
        return v


class YamlWalletStore(WalletStore):
    """Loads wallets from a YAML file on each call."""

    def __init__(self, path: str):
        self.path = Path(path)

    def list_wallets(self) -> List[Wallet]:
        if not self.path.exists():
            raise ConfigurationError(f"Wallet file not found: {self.path}")

        with open(self.path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Wallet file {self.path} must be a mapping with a 'wallets' list")

        try:
            parsed = WalletFile(**raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid wallet file {self.path}: {e}")

        wallets = [
            Wallet(
                id=record.id,
                name=record.name,
                address=record.address,
                enabled=record.enabled,
                private_key=_expand_env(record.private_key),
                encrypted_key=record.encrypted_key or None,
            )
            for record in parsed.wallets
        ]
        enabled = sum(1 for w in wallets if w.enabled)
        logger.info(f"Loaded {len(wallets)} wallet(s) from {self.path} ({enabled} enabled)")
        return wallets
