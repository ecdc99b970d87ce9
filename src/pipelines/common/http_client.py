from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from datah.errors import FetchError
from datah.settings import Settings


@dataclass(frozen=True)
class HttpClientConfig:
    timeout_seconds: int
    max_retries: int
    backoff_seconds: float
    request_delay_seconds: float = 0.0

    def __post_init__(self) -> None:
        # One attempt is always made.
        object.__setattr__(self, "max_retries", max(0, int(self.max_retries)))


class HttpClient:
    """Thin httpx wrapper: timeouts, bounded retries, per-host courtesy delay.

    Every failure surfaces as ``FetchError`` carrying the requested URL; a
    response is never returned half-read.
    """

    def __init__(
        self,
        config: HttpClientConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.client = httpx.Client(
            timeout=config.timeout_seconds,
            follow_redirects=True,
            trust_env=False,
            transport=transport,
        )
        self._sleep = sleep
        self._clock = clock
        self._last_request_at: dict[str, float] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        timeout_seconds: int | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        request_delay_seconds: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> "HttpClient":
        config = HttpClientConfig(
            timeout_seconds=timeout_seconds or settings.request_timeout_seconds,
            max_retries=max_retries if max_retries is not None else settings.http_max_retries,
            backoff_seconds=backoff_seconds or settings.http_backoff_seconds,
            request_delay_seconds=(
                request_delay_seconds
                if request_delay_seconds is not None
                else settings.request_delay_seconds
            ),
        )
        return cls(config, transport=transport)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _respect_courtesy_delay(self, url: str) -> None:
        if self.config.request_delay_seconds <= 0:
            return
        host = httpx.URL(url).host
        last = self._last_request_at.get(host)
        if last is not None:
            remaining = self.config.request_delay_seconds - (self._clock() - last)
            if remaining > 0:
                self._sleep(remaining)
        self._last_request_at[host] = self._clock()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        last_error: Exception | None = None
        for attempt in range(self.config.max_retries + 1):
            self._respect_courtesy_delay(url)
            try:
                response = self.client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as exc:
                last_error = exc
                message = f"HTTP error {exc.response.status_code}"
            except httpx.RequestError as exc:
                last_error = exc
                message = f"Request failed: {exc.__class__.__name__}: {exc}"
            if attempt >= self.config.max_retries:
                break
            time_to_wait = self.config.backoff_seconds * (2**attempt)
            self._sleep(time_to_wait)
        raise FetchError(message, url=str(httpx.URL(url, params=kwargs.get("params")))) from last_error

    def get_json(self, url: str, **kwargs: Any) -> Any:
        response = self._request("GET", url, **kwargs)
        resolved_url = str(response.url)
        body = response.text
        if not body.strip():
            raise FetchError("Empty response body.", url=resolved_url)
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise FetchError(f"Malformed JSON payload: {exc}", url=resolved_url) from exc
