"""
HTTP client for an external transaction executor (signer/broadcaster).

Signing and broadcast happen in the executor service; this client only
posts one operation and maps the reply to a SubmitResult. Every call is
bounded by a request timeout and a fixed retry budget, so callers always
get an answer.

Retries on:
- 429 (rate limit)
- 5xx (server errors)
- Network errors (timeout, connection)

Does NOT retry on:
- other 4xx responses
"""

import logging
import random
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from core.exceptions import ConfigurationError
from core.interfaces import HoldingsSource, TransactionExecutor
from core.models import ResolvedWallet, SubmitResult, TokenHolding

logger = logging.getLogger(__name__)

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class HttpTransactionExecutor(TransactionExecutor, HoldingsSource):
    """Talks to an executor service: POST /submit, GET /holdings."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ConfigurationError(f"Invalid executor URL: {base_url!r}")
        # Signing keys travel in the request body.
        if parsed.scheme == "http" and parsed.hostname not in _LOOPBACK_HOSTS:
            raise ConfigurationError("Executor URL must use https unless it is a loopback address")
        if timeout_seconds <= 0:
            raise ConfigurationError(f"Executor timeout must be positive, got {timeout_seconds}")

        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.max_retries = max(1, int(max_retries))
        self._session = session or requests.Session()

        logger.info(
            f"Initialized HttpTransactionExecutor (host={parsed.hostname}, "
            f"timeout={self.timeout_seconds}s, retries={self.max_retries})"
        )

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "HttpTransactionExecutor":
        raw_config = raw_config or {}
        url = raw_config.get("url")
        if not url:
            raise ConfigurationError("executor.url is required")
        return cls(
            base_url=url,
            timeout_seconds=float(raw_config.get("timeout_seconds", 30.0)),
            max_retries=int(raw_config.get("max_retries", 3)),
        )

    def _request(self, method: str, path: str, what: str, **kwargs) -> Tuple[Optional[Any], Optional[str]]:
        """
        Make a request with retry and exponential backoff.

        Returns:
            (payload, None) on success, (None, error) once the request
            is rejected or the retry budget is spent
        """
        url = f"{self.base_url}{path}"
        last_error = "unknown error"

        for attempt in range(self.max_retries):
            try:
                response = self._session.request(method, url, timeout=self.timeout_seconds, **kwargs)
                response.raise_for_status()
                return response.json(), None

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Executor rejected {what}: HTTP {status_code}")
                    return None, f"executor rejected request (HTTP {status_code})"
                logger.warning(f"Executor HTTP {status_code} on {what}, attempt {attempt + 1}/{self.max_retries}")
                last_error = f"HTTP {status_code}"

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(
                    f"Executor network error on {what}: {type(e).__name__}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                last_error = type(e).__name__

            except ValueError:
                logger.error(f"Executor returned a non-JSON reply for {what}")
                return None, "executor returned an invalid response"

            if attempt < self.max_retries - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {self.max_retries} executor attempts exhausted for {what}")
        return None, f"executor unavailable after {self.max_retries} attempts: {last_error}"

    def submit(self, wallet: ResolvedWallet, params: Dict[str, Any]) -> SubmitResult:
        action = params.get("action", "swap")
        body = {
            "wallet_address": wallet.address,
            "signer_key": wallet.private_key,
            "params": params,
        }
        payload, error = self._request("POST", "/submit", f"{action} on {wallet.label}", json=body)
        if error is not None:
            return SubmitResult.failure(error)
        return self._parse(payload)

    def list_holdings(self, wallet_address: str) -> List[TokenHolding]:
        """
        Token balances for one wallet.

        Raises:
            RuntimeError: if the executor cannot report holdings
        """
        payload, error = self._request(
            "GET", "/holdings", f"holdings for {wallet_address[:10]}", params={"wallet": wallet_address}
        )
        if error is not None:
            raise RuntimeError(f"Failed to fetch holdings for {wallet_address[:10]}...: {error}")

        holdings = []
        for entry in (payload or {}).get("holdings", []):
            try:
                holdings.append(
                    TokenHolding(
                        address=entry["address"],
                        symbol=entry.get("symbol") or entry["address"][:10],
                        amount=float(entry["amount"]),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed holding entry for {wallet_address[:10]}: {entry!r}")
        return holdings

    @staticmethod
    def _parse(payload: Any) -> SubmitResult:
        if not isinstance(payload, dict):
            return SubmitResult.failure("executor returned an invalid response")
        amount = payload.get("amount_received")
        block = payload.get("block_number")
        return SubmitResult(
            success=bool(payload.get("success")),
            tx_hash=payload.get("tx_hash"),
            amount_received=float(amount) if amount is not None else None,
            block_number=int(block) if block is not None else None,
            error=payload.get("error"),
        )
