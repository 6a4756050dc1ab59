"""
Free machine translation through the public Google Translate endpoint.

No key is needed. The source language is auto-detected.
"""

import json
import logging
from typing import Optional

import httpx

from personachat.config_loader import CONFIG
from personachat.errors import ApiError, ConnectivityError
from personachat.providers.base import request_timeout

logger = logging.getLogger(__name__)


def join_segments(data) -> Optional[str]:
    """Joined translation from the endpoint's nested arrays, or None if the shape is wrong."""
    if not isinstance(data, list) or not data or not isinstance(data[0], list):
        return None
    return "".join(
        segment[0] for segment in data[0]
        if isinstance(segment, list) and segment and isinstance(segment[0], str)
    )


async def translate_text(
    text: str,
    target_lang: str = "en",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    if not text.strip():
        return text

    params = {"client": "gtx", "sl": "auto", "tl": target_lang, "dt": "t", "q": text}
    async with httpx.AsyncClient(transport=transport, timeout=request_timeout()) as client:
        try:
            resp = await client.get(CONFIG["providers"]["translate_url"], params=params)
        except httpx.TransportError as exc:
            logger.error(f"[TRANSLATE] Request failed: {exc}")
            raise ConnectivityError("Translation service unreachable") from exc

    if resp.status_code >= 400:
        raise ApiError(resp.status_code, resp.text, message="Translation service unreachable")

    try:
        translated = join_segments(resp.json())
    except json.JSONDecodeError:
        translated = None
    if translated is None:
        raise ApiError(resp.status_code, resp.text, message="Translation service returned an invalid format")

    logger.info(f"[TRANSLATE] {len(text)} chars -> {target_lang}")
    return translated
