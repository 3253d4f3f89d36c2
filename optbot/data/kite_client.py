from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any

import requests

LOGGER = logging.getLogger(__name__)


class KiteAPIError(RuntimeError):
    """Non-retryable broker API error."""


class RetryableKiteAPIError(KiteAPIError):
    """Retryable API/network error."""


class KiteAuthError(KiteAPIError):
    """Access token rejected (expired or revoked)."""


@dataclass(slots=True)
class KiteClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    network_disconnects: int = 0
    auth_failures: int = 0


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            wait_seconds = 0.0
            with self.lock:
                now = time.monotonic()
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(
                    float(self.capacity),
                    self.tokens + elapsed * self.rate_per_second,
                )
                self.last_refill = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


def _is_disconnect_error(exc: requests.RequestException) -> bool:
    text = str(exc).lower()
    patterns = (
        "remote end closed connection",
        "remote disconnected",
        "connection aborted",
        "connection reset",
    )
    return any(item in text for item in patterns)


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def last_complete_average_price(history: list[dict[str, Any]]) -> float | None:
    """Average price of the last COMPLETE entry in an order history, if any."""
    for entry in reversed(history):
        if str(entry.get("status", "")).strip().upper() != "COMPLETE":
            continue
        try:
            price = float(entry.get("average_price") or 0.0)
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None
    return None


class KiteClient:
    """
    Kite Connect v3 REST client.

    Auth: every request carries `Authorization: token <api_key>:<access_token>`.
    Access tokens are issued once per trading day outside this process, so an
    auth failure is surfaced to the caller instead of being refreshed here.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: str,
        timeout_seconds: int = 10,
        *,
        rate_limit_rps: float = 3.0,
        rate_limit_burst: int = 5,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.1, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))

        self.session = requests.Session()
        self.session.headers.update({"X-Kite-Version": "3", "Accept": "application/json"})
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._metrics = KiteClientMetrics()
        self._metrics_lock = threading.Lock()

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            snapshot = KiteClientMetrics(
                total_requests=self._metrics.total_requests,
                total_retries=self._metrics.total_retries,
                http_429_count=self._metrics.http_429_count,
                network_disconnects=self._metrics.network_disconnects,
                auth_failures=self._metrics.auth_failures,
            )
        return asdict(snapshot)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"token {self.api_key}:{self.access_token}"}

    @staticmethod
    def _extract_error(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text
        if not isinstance(payload, dict):
            return response.text
        error_type = payload.get("error_type") or "Error"
        message = payload.get("message") or response.text
        return f"{error_type}: {message}"

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = max(0.0, retry_after)
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries", 1)
        LOGGER.warning(
            "Retrying Kite API call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _send_http(
        self,
        *,
        method: str,
        path: str,
        params: Any = None,
        data: dict[str, Any] | None = None,
    ) -> requests.Response:
        self._limiter.acquire()
        self._metric_add("total_requests", 1)
        return self.session.request(
            method=method,
            url=f"{self.base_url}{path}",
            params=params,
            data=data,
            headers=self._auth_headers(),
            timeout=self.timeout_seconds,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        for attempt in range(1, self.request_max_attempts + 1):
            try:
                response = self._send_http(method=method, path=path, params=params, data=data)
            except requests.RequestException as exc:
                if _is_disconnect_error(exc):
                    self._metric_add("network_disconnects", 1)
                if attempt >= self.request_max_attempts:
                    raise RetryableKiteAPIError(f"Network error {method} {path}: {exc}") from exc
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason=f"network:{type(exc).__name__}",
                )
                continue

            if response.status_code == 403:
                self._metric_add("auth_failures", 1)
                raise KiteAuthError(
                    f"Kite rejected access token on {method} {path}: {self._extract_error(response)}"
                )

            if response.status_code == 429:
                self._metric_add("http_429_count", 1)
                if attempt >= self.request_max_attempts:
                    raise RetryableKiteAPIError(
                        f"Retryable API error: HTTP {response.status_code} {self._extract_error(response)}"
                    )
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason="http_429",
                    retry_after=_parse_retry_after(response.headers),
                )
                continue

            if response.status_code in (500, 502, 503, 504):
                if attempt >= self.request_max_attempts:
                    raise RetryableKiteAPIError(
                        f"Retryable API error: HTTP {response.status_code} {self._extract_error(response)}"
                    )
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason=f"http_{response.status_code}",
                )
                continue

            if response.status_code >= 400:
                raise KiteAPIError(
                    f"API error {method} {path}: HTTP {response.status_code} {self._extract_error(response)}"
                )

            try:
                payload = response.json()
            except ValueError as exc:
                raise KiteAPIError(f"Malformed JSON from {method} {path}") from exc
            if not isinstance(payload, dict) or payload.get("status") != "success":
                message = payload.get("message") if isinstance(payload, dict) else None
                raise KiteAPIError(f"API error {method} {path}: {message or 'unexpected payload'}")
            return payload.get("data")

        raise RetryableKiteAPIError(f"Could not complete request {method} {path}")

    def place_order(
        self,
        *,
        symbol: str,
        side: str,
        quantity: int,
        price: float,
        exchange: str = "NFO",
        product: str = "MIS",
        order_type: str = "MARKET",
        variety: str = "regular",
        tag: str | None = None,
    ) -> str:
        transaction_type = side.strip().upper()
        if transaction_type not in {"BUY", "SELL"}:
            raise ValueError(f"Unsupported order side {side}")
        payload: dict[str, Any] = {
            "tradingsymbol": symbol,
            "exchange": exchange,
            "transaction_type": transaction_type,
            "quantity": int(quantity),
            "product": product,
            "order_type": order_type,
        }
        if order_type == "LIMIT":
            payload["price"] = float(price)
        if tag:
            # Kite caps tags at 20 characters.
            payload["tag"] = tag[:20]
        data = self._request("POST", f"/orders/{variety}", data=payload)
        order_id = (data or {}).get("order_id") if isinstance(data, dict) else None
        if not order_id:
            raise KiteAPIError(f"Order accepted without order_id for {symbol}")
        return str(order_id)

    def get_order_history(self, order_id: str) -> list[dict[str, Any]]:
        data = self._request("GET", f"/orders/{order_id}")
        return data if isinstance(data, list) else []

    def get_ltp(self, instruments: list[str]) -> dict[str, dict[str, Any]]:
        if not instruments:
            return {}
        data = self._request("GET", "/quote/ltp", params=[("i", item) for item in instruments])
        return data if isinstance(data, dict) else {}
