"""Wait for a dependent HTTP server to come up before sending it work."""

import asyncio

import httpx

from gitopsplane.errors import WaitTimeoutError
from gitopsplane.logging_config import get_logger

logger = get_logger(__name__)


async def wait_for_server_up(
    server_url: str,
    interval: float = 1.0,
    timeout: float = 60.0,
    client: httpx.AsyncClient | None = None,
) -> None:
    """Probe GET {server_url}/ every `interval` seconds until the server answers.

    Any HTTP response counts as up; only transport errors mean "not yet".
    Raises WaitTimeoutError once `timeout` seconds have passed.
    """
    url = server_url.rstrip("/") + "/"
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=interval)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempts = 0
    try:
        while True:
            attempts += 1
            # Each phase of a request gets its own limit, so cap all of them at what is left
            request_timeout = max(min(interval, deadline - loop.time()), 0.0)
            try:
                response = await client.get(url, timeout=request_timeout)
            except httpx.TransportError as e:
                logger.debug("Server not reachable yet", url=url, attempt=attempts, error=str(e))
            else:
                logger.info(
                    "Server is up",
                    url=url,
                    status_code=response.status_code,
                    attempts=attempts,
                )
                return

            if loop.time() + interval > deadline:
                break
            await asyncio.sleep(interval)
    finally:
        if owns_client:
            await client.aclose()

    raise WaitTimeoutError(f"Server {url} not reachable after {timeout:g}s")
