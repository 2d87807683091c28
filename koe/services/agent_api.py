"""
Agent completion API client.

POST {AI_API_URL}/api/agents/{agent_id}/completion streams back-to-back
JSON objects. This module only moves bytes; framing lives in koe.framing.
"""

from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx

from ..log import ServiceLogger

log = ServiceLogger("Agent")


class AgentAPIError(Exception):
    """Non-2xx response or transport failure talking to the agent API."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"Agent API error: {status_code} - {detail}")
        self.status_code = status_code
        self.detail = detail


class AgentClient:
    """
    Streams one completion from the agent API.

    Closing (or cancelling) the iterator closes the HTTP response, which
    aborts the upstream request.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport

    def completion_url(self, agent_id: str) -> str:
        return f"{self._base_url}/api/agents/{quote(agent_id, safe='')}/completion"

    async def stream_completion(
        self,
        agent_id: str,
        session_id: str,
        prompt: str,
        cookies: str = "",
    ) -> AsyncIterator[bytes]:
        """Yield raw body chunks; raises AgentAPIError before the first one."""
        headers = {"Content-Type": "application/json"}
        if cookies:
            headers["Cookie"] = cookies

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                async with client.stream(
                    "POST",
                    self.completion_url(agent_id),
                    json={"sessionId": session_id, "prompt": prompt},
                    headers=headers,
                ) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise AgentAPIError(
                            response.status_code,
                            body.decode("utf-8", errors="replace"),
                        )

                    log.connected()
                    async for chunk in response.aiter_bytes():
                        yield chunk
            except httpx.HTTPError as e:
                raise AgentAPIError(502, str(e)) from e

        log.disconnected()
