from __future__ import annotations

import httpx
import pytest

from datah.errors import FetchError
from pipelines.common.http_client import HttpClient, HttpClientConfig


def _client(handler, *, max_retries: int = 0, delay: float = 0.0, sleeps=None, clock=None) -> HttpClient:
    config = HttpClientConfig(
        timeout_seconds=5,
        max_retries=max_retries,
        backoff_seconds=1.0,
        request_delay_seconds=delay,
    )
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return HttpClient(
        config,
        transport=httpx.MockTransport(handler),
        sleep=(sleeps.append if sleeps is not None else (lambda _seconds: None)),
        **kwargs,
    )


def test_get_json_returns_payload() -> None:
    client = _client(lambda request: httpx.Response(200, json=[{"ok": True}]))

    assert client.get_json("https://example.test/data", params={"a": "1"}) == [{"ok": True}]
    client.close()


def test_http_error_retries_with_backoff_then_raises() -> None:
    attempts: list[str] = []
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(str(request.url))
        return httpx.Response(503)

    client = _client(handler, max_retries=2, sleeps=sleeps)

    with pytest.raises(FetchError) as exc_info:
        client.get_json("https://example.test/data", params={"varcd": "0008273"})

    assert len(attempts) == 3
    assert sleeps == [1.0, 2.0]
    assert "503" in str(exc_info.value)
    assert exc_info.value.url == "https://example.test/data?varcd=0008273"


def test_transport_error_is_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(FetchError, match="ConnectError"):
        client.get_json("https://example.test/data")


def test_empty_body_and_malformed_json_are_fetch_errors() -> None:
    empty = _client(lambda request: httpx.Response(200, content=b"  "))
    malformed = _client(lambda request: httpx.Response(200, content=b"{oops"))

    with pytest.raises(FetchError, match="Empty response body"):
        empty.get_json("https://example.test/data")
    with pytest.raises(FetchError, match="Malformed JSON"):
        malformed.get_json("https://example.test/data")


def test_courtesy_delay_is_per_host() -> None:
    ticks = iter([0.0, 0.1, 0.5, 0.6])
    sleeps: list[float] = []
    client = _client(
        lambda request: httpx.Response(200, json={}),
        delay=0.5,
        sleeps=sleeps,
        clock=lambda: next(ticks),
    )

    client.get_json("https://one.example.test/a")
    client.get_json("https://one.example.test/b")
    client.get_json("https://two.example.test/a")

    assert sleeps == [pytest.approx(0.4)]


def test_negative_max_retries_still_makes_one_attempt() -> None:
    attempts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(str(request.url))
        return httpx.Response(500)

    client = _client(handler, max_retries=-3)

    assert client.config.max_retries == 0
    with pytest.raises(FetchError, match="HTTP error 500"):
        client.get_json("https://example.test/data")
    assert len(attempts) == 1
    client.close()
