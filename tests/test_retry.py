import httpx
import pytest

from vm_lifecycle.clients.http import RequestFailure, RetryPolicy, request_with_retry


def test_request_with_retry_raises_after_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status_code=500, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as exc_info:
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0)
        )
    assert len(calls) == 2
    assert exc_info.value.status_code == 500
    assert exc_info.value.attempts == 2


def test_request_with_retry_succeeds():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            status_code=200, json={"ok": True}, request=request
        )
    )
    client = httpx.Client(transport=transport)
    response = request_with_retry(
        client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0)
    )
    assert response.json() == {"ok": True}


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status_code=401, text="bad credentials", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as exc_info:
        request_with_retry(
            client, "POST", "http://example.test", RetryPolicy(attempts=3, sleep_sec=0)
        )
    assert len(calls) == 1
    assert "bad credentials" in exc_info.value.detail


def test_throttling_is_retried_until_success():
    responses = iter([429, 503, 200])

    def handler(request):
        return httpx.Response(status_code=next(responses), json={}, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    response = request_with_retry(
        client, "POST", "http://example.test", RetryPolicy(attempts=3, sleep_sec=0)
    )
    assert response.status_code == 200


def test_transport_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as exc_info:
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=3, sleep_sec=0)
        )
    assert len(calls) == 3
    assert exc_info.value.error_type == "ConnectError"


def test_retry_after_header_is_honoured_up_to_a_cap(monkeypatch):
    slept = []
    monkeypatch.setattr("vm_lifecycle.clients.http.time.sleep", slept.append)
    responses = iter(
        [
            httpx.Response(status_code=429, headers={"Retry-After": "7"}),
            httpx.Response(status_code=503, headers={"Retry-After": "3600"}),
            httpx.Response(status_code=200, json={}),
        ]
    )
    client = httpx.Client(transport=httpx.MockTransport(lambda request: next(responses)))
    request_with_retry(
        client,
        "POST",
        "http://example.test",
        RetryPolicy(attempts=3, sleep_sec=1, max_retry_after_sec=60),
    )
    assert slept == [7.0, 60.0]
