"""PayPalClient unit tests"""
import asyncio
from typing import Any, Dict, List, Tuple

import httpx
import pytest

from services.paypal_client import AuthError, PayPalClient, ProviderError

TOKEN_RESPONSE = {"access_token": "token-1", "token_type": "Bearer", "expires_in": 32400}


class _DummyAsyncClient:
    """Stand-in for httpx.AsyncClient replaying queued responses"""

    def __init__(self, responses: List[httpx.Response], calls: List[Tuple[str, str, Dict[str, Any]]]) -> None:
        self._responses = responses
        self._calls = calls

    async def __aenter__(self) -> "_DummyAsyncClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    def _next(self) -> httpx.Response:
        try:
            return self._responses.pop(0)
        except IndexError as exc:  # pragma: no cover - test helper
            raise AssertionError("more requests than expected") from exc

    async def post(self, url: str, **kwargs) -> httpx.Response:
        self._calls.append(("POST", url, kwargs))
        return self._next()

    async def request(self, method: str, url: str, headers=None, json=None) -> httpx.Response:
        self._calls.append((method, url, {"headers": headers, "json": json}))
        return self._next()


def _patch_async_client(monkeypatch, responses: List[httpx.Response]) -> List[Tuple[str, str, Dict[str, Any]]]:
    """Swap httpx.AsyncClient for the double and return the call log"""

    queue = list(responses)
    calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def _factory(*args, **kwargs):
        return _DummyAsyncClient(queue, calls)

    monkeypatch.setattr("services.paypal_client.httpx.AsyncClient", _factory)
    return calls


def _client(**kwargs) -> PayPalClient:
    options = {"base_url": "https://paypal.test", "backoff_factor": 0}
    options.update(kwargs)
    return PayPalClient("client-id", "client-secret", **options)


def _token() -> httpx.Response:
    return httpx.Response(status_code=200, json=TOKEN_RESPONSE)


def test_get_subscription_details_uses_bearer_token(monkeypatch):
    calls = _patch_async_client(
        monkeypatch,
        [_token(), httpx.Response(status_code=200, json={"id": "I-1", "status": "ACTIVE", "plan_id": "P-1"})],
    )

    details = asyncio.run(_client().get_subscription_details("I-1"))

    assert details.id == "I-1"
    assert details.status == "ACTIVE"
    token_call, detail_call = calls
    assert token_call[1] == "https://paypal.test/v1/oauth2/token"
    assert token_call[2]["auth"] == ("client-id", "client-secret")
    assert token_call[2]["data"] == {"grant_type": "client_credentials"}
    assert detail_call[1] == "https://paypal.test/v1/billing/subscriptions/I-1"
    assert detail_call[2]["headers"]["Authorization"] == "Bearer token-1"


def test_access_token_is_cached(monkeypatch):
    calls = _patch_async_client(
        monkeypatch,
        [
            _token(),
            httpx.Response(status_code=200, json={"id": "I-1", "status": "ACTIVE"}),
            httpx.Response(status_code=200, json={"id": "I-2", "status": "ACTIVE"}),
        ],
    )

    async def _run():
        client = _client()
        await client.get_subscription_details("I-1")
        await client.get_subscription_details("I-2")

    asyncio.run(_run())

    assert [call[0] for call in calls] == ["POST", "GET", "GET"]


def test_retry_then_success(monkeypatch):
    _patch_async_client(
        monkeypatch,
        [
            _token(),
            httpx.Response(status_code=503, json={"name": "SERVICE_UNAVAILABLE"}),
            httpx.Response(status_code=200, json={"id": "I-1", "status": "SUSPENDED"}),
        ],
    )

    status, details = asyncio.run(_client(max_retries=1).get_subscription_status("I-1"))

    assert status == "SUSPENDED"
    assert details.id == "I-1"


def test_status_check_failure_degrades_to_other(monkeypatch):
    _patch_async_client(
        monkeypatch,
        [_token(), httpx.Response(status_code=404, json={"name": "RESOURCE_NOT_FOUND", "message": "gone"})],
    )

    status, details = asyncio.run(_client().get_subscription_status("I-404"))

    assert status == "OTHER"
    assert details is None


def test_error_mapping_resource_not_found(monkeypatch):
    _patch_async_client(
        monkeypatch,
        [_token(), httpx.Response(status_code=404, json={"name": "RESOURCE_NOT_FOUND", "message": "gone"})],
    )

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_client().get_subscription_details("I-404"))

    error = excinfo.value
    assert error.status_code == 404
    assert error.code == "RESOURCE_NOT_FOUND"
    assert str(error) == "PayPal subscription not found."


def test_cancel_subscription_204_is_success(monkeypatch):
    calls = _patch_async_client(monkeypatch, [_token(), httpx.Response(status_code=204)])

    assert asyncio.run(_client().cancel_subscription("I-1", "User changed subscription plan")) is True
    assert calls[1][2]["json"] == {"reason": "User changed subscription plan"}


def test_cancel_subscription_failure_is_soft(monkeypatch):
    _patch_async_client(
        monkeypatch,
        [_token(), httpx.Response(status_code=422, json={"name": "UNPROCESSABLE_ENTITY"})],
    )

    assert asyncio.run(_client().cancel_subscription("I-1", "reason")) is False


def test_strict_cancel_tolerates_404_and_raises_otherwise(monkeypatch):
    _patch_async_client(
        monkeypatch,
        [
            _token(),
            httpx.Response(status_code=404, json={"name": "RESOURCE_NOT_FOUND"}),
            httpx.Response(status_code=500, json={"name": "INTERNAL_SERVER_ERROR"}),
        ],
    )

    async def _run():
        client = _client(max_retries=0)
        await client.cancel_subscription_strict("I-1", "Canceled by user")
        await client.cancel_subscription_strict("I-2", "Canceled by user")

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(_run())

    assert excinfo.value.status_code == 500


def test_missing_credentials_raise_auth_error():
    client = PayPalClient(" ", None)

    with pytest.raises(AuthError):
        asyncio.run(client.get_access_token())


def test_rejected_credentials_propagate_from_status_check(monkeypatch):
    _patch_async_client(
        monkeypatch,
        [httpx.Response(status_code=401, json={"error": "invalid_client", "error_description": "bad"})],
    )

    with pytest.raises(AuthError) as excinfo:
        asyncio.run(_client().get_subscription_status("I-1"))

    assert excinfo.value.status_code == 401
    assert excinfo.value.code == "invalid_client"


def test_verify_webhook_signature_posts_payload(monkeypatch):
    calls = _patch_async_client(
        monkeypatch,
        [_token(), httpx.Response(status_code=200, json={"verification_status": "SUCCESS"})],
    )

    result = asyncio.run(_client().verify_webhook_signature({"webhook_id": "WH1"}))

    assert result == {"verification_status": "SUCCESS"}
    assert calls[1][1] == "https://paypal.test/v1/notifications/verify-webhook-signature"
    assert calls[1][2]["json"] == {"webhook_id": "WH1"}
