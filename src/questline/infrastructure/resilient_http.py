import asyncio
import os
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from questline.domain.errors import CircuitOpenError


_RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def _is_truthy(value: str | None, *, default: str) -> bool:
    normalized = str(value if value is not None else default).strip().lower()
    return normalized in {"1", "true", "yes"}


@dataclass
class _CircuitState:
    failures: int = 0
    opened_until_epoch: float = 0.0


class CircuitBreaker:
    """Per-host failure counter that rejects calls for a cool-down after repeated failures."""

    def __init__(
        self,
        *,
        enabled: bool | None = None,
        failure_threshold: int | None = None,
        reset_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if enabled is None:
            enabled = _is_truthy(os.getenv("QUESTLINE_HTTP_CIRCUIT_BREAKER_ENABLED"), default="1")
        if failure_threshold is None:
            failure_threshold = int(os.getenv("QUESTLINE_HTTP_CIRCUIT_FAILURE_THRESHOLD", "3"))
        if reset_seconds is None:
            reset_seconds = float(os.getenv("QUESTLINE_HTTP_CIRCUIT_RESET_SECONDS", "120"))
        self.enabled = bool(enabled)
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_seconds = max(0.0, float(reset_seconds))
        self._clock = clock
        self._states: dict[str, _CircuitState] = {}

    def before_attempt(self, key: str) -> None:
        if not self.enabled:
            return
        state = self._states.get(key)
        if state is None:
            return

        now = self._clock()
        if state.opened_until_epoch > now:
            raise CircuitOpenError(f"HTTP circuit open for {key} until {int(state.opened_until_epoch)}")

        if state.opened_until_epoch > 0:
            self._states[key] = _CircuitState()

    def record_success(self, key: str) -> None:
        if not self.enabled:
            return
        if key in self._states:
            self._states[key] = _CircuitState()

    def record_failure(self, key: str) -> None:
        if not self.enabled:
            return
        state = self._states.setdefault(key, _CircuitState())
        state.failures += 1
        if state.failures >= self.failure_threshold:
            state.opened_until_epoch = self._clock() + self.reset_seconds

    def is_open(self, key: str) -> bool:
        state = self._states.get(key)
        return bool(self.enabled and state is not None and state.opened_until_epoch > self._clock())

    def reset(self) -> None:
        self._states.clear()


def circuit_key(client: httpx.AsyncClient) -> str:
    return str(getattr(client, "base_url", "unknown") or "unknown")


def is_retryable_exception(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS_CODES
    return False


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    params: dict[str, Any] | None = None,
    json: Any = None,
    headers: dict[str, str] | None = None,
    retries: int = 0,
    backoff_seconds: float = 0.2,
    breaker: CircuitBreaker | None = None,
) -> httpx.Response:
    attempts = max(0, int(retries)) + 1
    key = circuit_key(client)

    for attempt_index in range(attempts):
        try:
            if breaker is not None:
                breaker.before_attempt(key)
            response = await client.request(method, path, params=params, json=json, headers=headers)
            if response.status_code in _RETRYABLE_STATUS_CODES:
                raise httpx.HTTPStatusError(
                    f"Retryable HTTP status: {response.status_code}",
                    request=response.request,
                    response=response,
                )
            response.raise_for_status()
            if breaker is not None:
                breaker.record_success(key)
            return response
        except CircuitOpenError:
            raise
        except Exception as exc:
            should_retry = is_retryable_exception(exc)
            if should_retry and breaker is not None:
                breaker.record_failure(key)
            is_last_attempt = attempt_index >= attempts - 1
            if not should_retry or is_last_attempt:
                raise
            delay = max(0.0, backoff_seconds) * (2 ** attempt_index)
            if delay > 0:
                await asyncio.sleep(delay)

    raise RuntimeError("unreachable")
