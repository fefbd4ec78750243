"""
Fault-injection tests for HttpTransactionExecutor retry logic.

Verifies:
- 429 / 5xx / network errors retry with backoff, then fail explicitly
- Other 4xx fail immediately
- Replies map to SubmitResult / TokenHolding
- Plain-http URLs are refused unless loopback
"""

from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ConnectionError, HTTPError, Timeout

from core.credentials import CredentialResolver
from core.exceptions import ConfigurationError
from infra.executor_client import HttpTransactionExecutor
from tests.helpers import make_wallet

W1 = "0x" + "1" * 40


def _response(payload=None, status=200):
    response = Mock()
    response.status_code = status
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


def _http_error(status):
    return HTTPError(response=Mock(status_code=status))


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def client(session):
    return HttpTransactionExecutor("https://executor.example", timeout_seconds=5, max_retries=3, session=session)


@pytest.fixture
def wallet():
    resolved, _ = CredentialResolver().resolve_wallets([make_wallet("w1", W1, private_key="0xkey")])
    return resolved[0]


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("infra.executor_client.time.sleep") as sleep:
        yield sleep


class TestSubmit:

    def test_success(self, client, session, wallet):
        session.request.return_value = _response(
            {"success": True, "tx_hash": "0xabc", "amount_received": "12.5", "block_number": 99}
        )

        result = client.submit(wallet, {"action": "sell", "amount": 10})

        assert result.success is True
        assert result.tx_hash == "0xabc"
        assert result.amount_received == 12.5
        assert result.block_number == 99
        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "https://executor.example/submit")
        body = session.request.call_args.kwargs["json"]
        assert body["wallet_address"] == W1
        assert body["signer_key"] == "0xkey"
        assert session.request.call_args.kwargs["timeout"] == 5

    def test_executor_reported_failure(self, client, session, wallet):
        session.request.return_value = _response({"success": False, "error": "slippage exceeded"})
        result = client.submit(wallet, {"action": "sell"})
        assert result.success is False
        assert result.error == "slippage exceeded"

    def test_retries_429_then_succeeds(self, client, session, wallet, no_sleep):
        session.request.side_effect = [_http_error(429), _http_error(503), _response({"success": True})]
        result = client.submit(wallet, {"action": "buy"})
        assert result.success is True
        assert session.request.call_count == 3
        assert no_sleep.call_count == 2

    @pytest.mark.parametrize("error", [Timeout("slow"), ConnectionError("reset"), _http_error(500)])
    def test_exhausted_retries_return_failure(self, client, session, wallet, error):
        session.request.side_effect = error
        result = client.submit(wallet, {"action": "buy"})
        assert result.success is False
        assert "after 3 attempts" in result.error
        assert session.request.call_count == 3

    def test_client_error_not_retried(self, client, session, wallet):
        session.request.side_effect = _http_error(400)
        result = client.submit(wallet, {"action": "buy"})
        assert result.success is False
        assert "HTTP 400" in result.error
        assert session.request.call_count == 1

    def test_non_json_reply(self, client, session, wallet):
        response = _response()
        response.json.side_effect = ValueError("not json")
        session.request.return_value = response
        result = client.submit(wallet, {"action": "buy"})
        assert result.success is False
        assert session.request.call_count == 1

    def test_key_not_logged(self, client, session, wallet, caplog):
        session.request.side_effect = _http_error(502)
        client.submit(wallet, {"action": "buy"})
        assert "0xkey" not in caplog.text


class TestHoldings:

    def test_parses_holdings(self, client, session):
        session.request.return_value = _response({
            "holdings": [
                {"address": "0x" + "a" * 40, "symbol": "AAA", "amount": "100.5"},
                {"address": "0x" + "b" * 40, "amount": 3},
                {"symbol": "broken"},
            ]
        })

        holdings = client.list_holdings(W1)

        assert [h.symbol for h in holdings] == ["AAA", "0xbbbbbbbb"]
        assert holdings[0].amount == 100.5
        assert session.request.call_args.kwargs["params"] == {"wallet": W1}

    def test_get_balance(self, client, session):
        session.request.return_value = _response({"holdings": [{"address": "0x" + "A" * 40, "amount": 7}]})
        assert client.get_balance(W1, "0x" + "a" * 40) == 7
        assert client.get_balance(W1, "0x" + "c" * 40) == 0.0

    def test_unavailable_raises(self, client, session):
        session.request.side_effect = _http_error(404)
        with pytest.raises(RuntimeError, match="Failed to fetch holdings"):
            client.list_holdings(W1)


class TestConfig:

    @pytest.mark.parametrize("url", ["http://executor.example", "ftp://x", "not a url"])
    def test_rejects_bad_urls(self, url):
        with pytest.raises(ConfigurationError):
            HttpTransactionExecutor(url)

    def test_allows_loopback_http(self):
        client = HttpTransactionExecutor("http://localhost:8545/", session=Mock())
        assert client.base_url == "http://localhost:8545"

    def test_from_config_requires_url(self):
        with pytest.raises(ConfigurationError):
            HttpTransactionExecutor.from_config({})

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ConfigurationError):
            HttpTransactionExecutor("https://x.example", timeout_seconds=0)
