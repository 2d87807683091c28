"""
ElevenLabs API key lookup.

The key is stored centrally in the agent platform's credentials service
and fetched on behalf of the calling user (their cookies are forwarded).
The ELEVENLABS_API_KEY environment variable is the fallback.
"""

from typing import Any, Optional

import httpx

from ..config import Settings
from ..log import ServiceLogger

log = ServiceLogger("Credentials")

CREDENTIAL_PATH = "/api/credentials/service/ELEVENLABS_API_KEY"


def _extract_key(credential: Any) -> Optional[str]:
    if not isinstance(credential, dict):
        return None
    data = credential.get("credential_data")
    if isinstance(data, dict) and data.get("api_key"):
        return data["api_key"]
    return credential.get("api_key") or credential.get("decrypted_data") or None


async def fetch_elevenlabs_key(
    settings: Settings,
    cookies: str = "",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[str]:
    """Return the user's stored key, else the configured one, else None."""
    if settings.ai_api_url and cookies:
        url = settings.ai_api_url.rstrip("/") + CREDENTIAL_PATH
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(10.0, connect=5.0),
                transport=transport,
            ) as client:
                response = await client.get(
                    url,
                    headers={"Content-Type": "application/json", "Cookie": cookies},
                )
            if response.status_code >= 400:
                log.warning(f"Credentials API returned {response.status_code}")
            else:
                key = _extract_key(response.json())
                if key:
                    return key
                log.warning("No api_key in credential response")
        except (httpx.HTTPError, ValueError) as e:
            log.error("Credential lookup failed", e)

    return settings.elevenlabs_api_key
