"""Open the authenticated websocket to the recognition service."""

from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Awaitable, Callable
from typing import Any

import websockets

from asr_relay.asr_config import ConnectionRetryConfig, DashScopeConfig
from asr_relay.errors import AsrConnectionError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# Handshake failures that count as a failed attempt.
_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, websockets.WebSocketException)


def build_headers(api_key: str) -> list[tuple[str, str]]:
    """Extra handshake headers; websockets adds Host/Upgrade/Sec-WebSocket-* itself."""
    return [("Authorization", f"Bearer {api_key}")]


def backoff_delay(attempt: int, config: ConnectionRetryConfig) -> float:
    """
    Delay (seconds) before retrying after failed attempt ``attempt`` (0-indexed).

    With the defaults this is 1.0, 2.0, 4.0, 4.0, ...
    """
    return config.base_delay * min(2**attempt, config.max_backoff_factor)


def build_ssl_context(config: DashScopeConfig) -> ssl.SSLContext | None:
    if not config.endpoint.startswith("wss://"):
        return None
    ssl_context = ssl.create_default_context(cafile=config.ca_cert)
    if config.disable_ssl_verify:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
    return ssl_context


async def connect_with_retry(
    api_key: str,
    *,
    config: DashScopeConfig,
    retry: ConnectionRetryConfig,
    sleep: Sleep = asyncio.sleep,
) -> Any:
    """
    Open the websocket, retrying failed handshakes with exponential backoff.

    Args:
        api_key: DashScope API key sent as a bearer token
        config: Endpoint and TLS settings
        retry: Number of retries and backoff parameters
        sleep: Coroutine used to wait between attempts (injectable for tests)

    Returns:
        An open websocket connection

    Raises:
        AsrConnectionError: If every attempt failed; wraps the last error.
    """
    ws_kwargs: dict[str, Any] = {
        "additional_headers": build_headers(api_key),
        "max_size": None,
        "open_timeout": config.open_timeout,
    }
    ssl_context = build_ssl_context(config)
    if ssl_context is not None:
        ws_kwargs["ssl"] = ssl_context

    total_attempts = retry.max_retries + 1
    last_error: BaseException | None = None

    for attempt in range(total_attempts):
        logger.info(f"Connection attempt {attempt + 1} of {total_attempts} to {config.endpoint}")
        try:
            ws = await websockets.connect(config.endpoint, **ws_kwargs)
        except _CONNECT_ERRORS as e:
            last_error = e
            logger.warning(f"WebSocket connection failed: {e}")
            if attempt < retry.max_retries:
                delay = backoff_delay(attempt, retry)
                logger.info(f"Retrying in {delay * 1000:.0f}ms...")
                await sleep(delay)
            continue
        logger.info(f"Connected on attempt {attempt + 1}")
        return ws

    raise AsrConnectionError(f"WebSocket connection failed: {last_error}") from last_error
