"""httpx plumbing shared by the provider implementations."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from chat_server.exceptions import ProviderError

logger = structlog.get_logger()


class StreamHandle:
    """An open streaming POST: the client and response it owns.

    The response body has not been read yet.  ``aclose()`` releases both and
    may be called repeatedly.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self.client = client
        self.response = response

    async def aclose(self) -> None:
        await self.response.aclose()
        await self.client.aclose()


async def open_stream(
    url: str,
    payload: dict[str, Any],
    *,
    provider: str,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> StreamHandle:
    """POST *payload* as JSON and return once the response headers arrive.

    Raises ProviderError for connection failures and non-success statuses;
    nothing is left open in that case.
    """
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=10.0),
        transport=transport,
    )
    request = client.build_request(
        "POST",
        url,
        json=payload,
        headers={"Content-Type": "application/json"},
    )

    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        await client.aclose()
        logger.error(f"{provider}_api_unreachable", url=url, error=str(exc))
        raise ProviderError(f"{provider} API request failed: {exc}") from exc

    if not response.is_success:
        body = await response.aread()
        await response.aclose()
        await client.aclose()
        logger.error(
            f"{provider}_api_error",
            status=response.status_code,
            body=body.decode(errors="replace")[:500],
        )
        raise ProviderError(
            f"{provider} API error: {response.status_code} {response.reason_phrase}",
            status_code=response.status_code,
        )

    return StreamHandle(client, response)
