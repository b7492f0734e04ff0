"""Maps command types to handlers and normalizes every outcome."""

from __future__ import annotations

import json
import logging
import os
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from command_dispatch.config import DEFAULT_HTTP_FETCH_MAX_BYTES
from command_dispatch.coordinator.models import CommandStatus, CommandType

logger = logging.getLogger(__name__)

CRASH_EXIT_CODE = 1


@dataclass(slots=True)
class ExecutionOutcome:
    """Uniform handler result."""

    status: CommandStatus
    result: Any = None
    error: str | None = None

    @classmethod
    def completed(cls, result: Any) -> ExecutionOutcome:
        return cls(status=CommandStatus.COMPLETED, result=result, error=None)

    @classmethod
    def failed(cls, error: str, result: Any = None) -> ExecutionOutcome:
        return cls(status=CommandStatus.FAILED, result=result, error=error)


class CommandHandler(Protocol):
    def __call__(self, payload: Mapping[str, Any]) -> ExecutionOutcome:
        """Run one command payload."""


class DelayHandler:
    """``DELAY``: sleep for ``payload["ms"]`` milliseconds."""

    def __init__(self, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def __call__(self, payload: Mapping[str, Any]) -> ExecutionOutcome:
        ms = payload.get("ms", 0)
        if isinstance(ms, bool) or not isinstance(ms, int | float) or ms < 0:
            return ExecutionOutcome.failed(f"Invalid delay: {ms!r} (expected ms >= 0)")
        logger.info("Delaying for %sms", ms)
        self._sleep(ms / 1000.0)
        return ExecutionOutcome.completed({"delayed_ms": ms})


class HttpGetJsonHandler:
    """``HTTP_GET_JSON``: fetch ``payload["url"]`` and return status and body.

    Any HTTP response, 4xx/5xx included, is a completed command; only network
    errors and timeouts fail it. Bodies are capped at ``max_bytes``.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        max_bytes: int = DEFAULT_HTTP_FETCH_MAX_BYTES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._max_bytes = max_bytes
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    def __call__(self, payload: Mapping[str, Any]) -> ExecutionOutcome:
        url = payload.get("url")
        if not isinstance(url, str) or not _is_http_url(url):
            return ExecutionOutcome.failed("URL is required for HTTP_GET_JSON command")

        logger.info("Making HTTP GET request to %s", url)
        try:
            with self._client.stream("GET", url) as response:
                raw, truncated = self._read_capped(response)
                status_code = response.status_code
                encoding = response.charset_encoding or "utf-8"
                is_success = response.is_success
        except httpx.TimeoutException as exc:
            logger.warning("Timeout fetching %s", url)
            return ExecutionOutcome.failed(
                f"timeout: {exc}",
                result=_network_failure_result(f"timeout: {exc}"),
            )
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching %s: %s", url, exc)
            return ExecutionOutcome.failed(str(exc), result=_network_failure_result(str(exc)))

        return ExecutionOutcome.completed(
            {
                "status": status_code,
                "body": _decode_body(raw, encoding=encoding),
                "truncated": truncated,
                "bytes_returned": len(raw),
                "error": None if is_success else f"HTTP {status_code}",
            },
        )

    def close(self) -> None:
        self._client.close()

    def _read_capped(self, response: httpx.Response) -> tuple[bytes, bool]:
        buffer = bytearray()
        for chunk in response.iter_bytes():
            remaining = self._max_bytes - len(buffer)
            if len(chunk) > remaining:
                buffer.extend(chunk[:remaining])
                return bytes(buffer), True
            buffer.extend(chunk)
        return bytes(buffer), False


class FailureInjector:
    """Fault-testing hook: hard-exits the process at a configured probability."""

    def __init__(
        self,
        *,
        enabled: bool = False,
        rate: float = 0.3,
        rng: random.Random | None = None,
        crash: Callable[[int], object] = os._exit,
    ) -> None:
        self.enabled = enabled
        self.rate = rate
        self._rng = rng or random.Random()  # noqa: S311
        self._crash = crash

    def maybe_crash(self, command_id: str) -> None:
        if not self.enabled:
            return
        if self._rng.random() < self.rate:
            logger.warning(
                "Command %s: random failure triggered (%.0f%% chance), crashing process",
                command_id,
                self.rate * 100,
            )
            self._crash(CRASH_EXIT_CODE)


class ExecutionDispatcher:
    """Runs a command through its handler; never raises for handler failures."""

    def __init__(
        self,
        *,
        handlers: Mapping[CommandType, CommandHandler],
        failure_injector: FailureInjector | None = None,
    ) -> None:
        self.handlers = dict(handlers)
        self.failure_injector = failure_injector or FailureInjector()

    def execute(
        self,
        command_id: str,
        command_type: CommandType | str,
        payload: Mapping[str, Any],
    ) -> ExecutionOutcome:
        logger.info("Executing command %s of type %s", command_id, _type_name(command_type))
        self.failure_injector.maybe_crash(command_id)

        handler = self._resolve(command_type)
        if handler is None:
            return ExecutionOutcome.failed(
                f"Unknown command type: {_type_name(command_type)}",
            )
        try:
            return handler(payload)
        except Exception as exc:  # noqa: BLE001
            logger.error("Command %s execution failed: %s", command_id, exc)
            return ExecutionOutcome.failed(str(exc) or exc.__class__.__name__)

    def close(self) -> None:
        """Release resources held by handlers, such as HTTP connection pools."""

        for handler in self.handlers.values():
            close = getattr(handler, "close", None)
            if callable(close):
                close()

    def _resolve(self, command_type: CommandType | str) -> CommandHandler | None:
        try:
            return self.handlers.get(CommandType(command_type))
        except ValueError:
            return None


def build_default_dispatcher(
    *,
    http_timeout_seconds: float = 30.0,
    http_max_bytes: int = DEFAULT_HTTP_FETCH_MAX_BYTES,
    failure_injector: FailureInjector | None = None,
) -> ExecutionDispatcher:
    return ExecutionDispatcher(
        handlers={
            CommandType.DELAY: DelayHandler(),
            CommandType.HTTP_GET_JSON: HttpGetJsonHandler(
                timeout_seconds=http_timeout_seconds,
                max_bytes=http_max_bytes,
            ),
        },
        failure_injector=failure_injector,
    )


def _type_name(command_type: CommandType | str) -> str:
    return command_type.value if isinstance(command_type, CommandType) else str(command_type)


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _decode_body(raw: bytes, *, encoding: str) -> Any:
    text = raw.decode(encoding, errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


def _network_failure_result(error: str) -> dict[str, Any]:
    return {
        "status": 0,
        "body": None,
        "truncated": False,
        "bytes_returned": 0,
        "error": error,
    }
