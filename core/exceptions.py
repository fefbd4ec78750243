"""Shared exception types for core trading logic."""

from typing import Optional


class ConfigurationError(ValueError):
    """Raised when a mode, plan parameter or config file is invalid.

    Always raised before any execution step runs.
    """


class CredentialError(RuntimeError):
    """Raised when no usable signing key can be resolved for a wallet."""

    def __init__(self, wallet_id: Optional[str], reason: str):
        super().__init__(f"wallet {wallet_id or '<unknown>'}: {reason}")
        self.wallet_id = wallet_id
        self.reason = reason


class TransactionFailure(RuntimeError):
    """A submission that did not succeed. Recorded, never fatal."""

    def __init__(self, action: str, reason: str, original: Optional[Exception] = None):
        super().__init__(f"{action} failed: {reason}")
        self.action = action
        self.reason = reason
        self.original = original


class StateInvariantViolation(RuntimeError):
    """Raised when an action is requested that the tracker does not permit.

    The tracker never re-validates; the orchestrator checks the next-action
    recommendation and raises this before calling track_buy/track_sell.
    """

    def __init__(self, wallet_address: str, action: str, mode: str):
        super().__init__(f"{action} not permitted for {wallet_address} in {mode} mode")
        self.wallet_address = wallet_address
        self.action = action
        self.mode = mode


class OperatorAborted(RuntimeError):
    """Raised when the operator declines a required confirmation."""


class EmptyHoldings(ConfigurationError):
    """Raised when a wallet holds none of the token being sold.

    Scoped to one wallet: the orchestrator excludes that wallet and
    carries on with the rest.
    """
