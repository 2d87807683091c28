"""
One-shot ElevenLabs text-to-speech over HTTP.

For complete texts where streaming input is not needed: the vendor's
/stream endpoint returns MP3 bytes as they are generated.
"""

from typing import AsyncIterator, Optional

import httpx

from ..log import ServiceLogger

log = ServiceLogger("Speech")

ELEVENLABS_API_URL = "https://api.elevenlabs.io/v1/text-to-speech"


class SpeechAPIError(Exception):
    """The speech API rejected the request."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"Speech API error: {status_code} - {detail}")
        self.status_code = status_code
        self.detail = detail


async def stream_speech(
    api_key: str,
    text: str,
    voice_id: str,
    model_id: str,
    output_format: str = "mp3_44100_128",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[bytes]:
    """Yield encoded audio; raises SpeechAPIError before the first chunk."""
    url = f"{ELEVENLABS_API_URL}/{voice_id}/stream?output_format={output_format}"

    async with httpx.AsyncClient(
        timeout=httpx.Timeout(60.0, connect=10.0),
        transport=transport,
    ) as client:
        try:
            async with client.stream(
                "POST",
                url,
                json={"text": text, "model_id": model_id},
                headers={"xi-api-key": api_key, "Content-Type": "application/json"},
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    detail = body.decode("utf-8", errors="replace")
                    log.error(f"API returned {response.status_code}: {detail[:200]}")
                    raise SpeechAPIError(response.status_code, detail)

                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise SpeechAPIError(502, str(e)) from e
