"""
Adapter for the community job-queue backend (AI Horde).

Generation is asynchronous on the server: submit a job, then poll its
status until it finishes, faults, or the poll budget runs out. The whole
reply arrives as a single fragment.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from personachat.cancellation import CancelToken, check
from personachat.config_loader import CONFIG
from personachat.errors import (
    ApiError, BackendRejectedError, ConnectivityError, GenerationError,
    GenerationFaultedError, GenerationTimeoutError, UnsupportedProviderError,
)
from personachat.models import AppSettings, Character, Message
from personachat.prompt_builder import build_system_context, format_transcript
from personachat.providers.base import DraftRequest, build_headers, request_timeout
from personachat.world_info import get_lorebook_context

logger = logging.getLogger(__name__)

KUDOS_UPFRONT = "KudosUpfront"


def is_anonymous(settings: AppSettings) -> bool:
    api_key = (settings.api_key or "").strip()
    return not api_key or api_key == CONFIG["job_queue"]["anonymous_api_key"]


def max_length_cap(settings: AppSettings) -> int:
    jq = CONFIG["job_queue"]
    return jq["anonymous_max_length"] if is_anonymous(settings) else jq["authenticated_max_length"]


def build_job_body(prompt: str, stop: List[str], settings: AppSettings) -> Dict[str, Any]:
    jq = CONFIG["job_queue"]
    return {
        "prompt": prompt,
        "params": {
            "n": 1,
            "max_context_length": jq["max_context_length"],
            "max_length": min(int(settings.max_output_tokens), max_length_cap(settings)),
            "temperature": float(settings.temperature),
            "stop_sequence": stop,
            "top_p": float(settings.top_p),
            "top_k": int(settings.top_k),
            "top_a": float(settings.top_a),
            "repetition_penalty": float(settings.repetition_penalty),
        },
        "models": [settings.model_name or jq["default_model"]],
    }


def submit_error(status_code: int, error_text: str) -> GenerationError:
    try:
        error_json = json.loads(error_text)
    except json.JSONDecodeError:
        error_json = None
    if isinstance(error_json, dict) and error_json.get("rc") == KUDOS_UPFRONT:
        return BackendRejectedError(
            "Horde Limit Reached: Heavy traffic requires Kudos for long responses. "
            "Please lower Max Tokens to 512 or use a registered API Key.",
            rejection_code=KUDOS_UPFRONT,
        )
    return ApiError(status_code, error_text, message=f"Horde Init Error: {error_text}")


def read_json(resp: httpx.Response) -> Dict[str, Any]:
    """Decode a success body; anything but a JSON object is an ApiError."""
    try:
        data = resp.json()
    except json.JSONDecodeError:
        raise ApiError(resp.status_code, resp.text)
    if not isinstance(data, dict):
        raise ApiError(resp.status_code, resp.text)
    return data


class JobQueueProvider:
    name = "job_queue"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=request_timeout())

    async def generate(
        self,
        history: Sequence[Message],
        character: Character,
        settings: AppSettings,
        summary: str = "",
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        lorebook_context = get_lorebook_context(history, character, settings)
        system_content = build_system_context(character, settings, lorebook_context, summary)
        prompt, stop = format_transcript(history, character, settings, system_content)

        jq = CONFIG["job_queue"]
        base_url = jq["base_url"].rstrip("/")
        headers = build_headers(settings)
        body = build_job_body(prompt, stop, settings)

        check(cancel)
        async with self._client() as client:
            try:
                resp = await client.post(f"{base_url}/generate/text/async", headers=headers, json=body)
            except httpx.TransportError as exc:
                raise ConnectivityError(f"Network Error: Could not reach the Horde API ({exc}).", provider="horde") from exc

            if resp.status_code >= 400:
                raise submit_error(resp.status_code, resp.text)

            job_id = read_json(resp).get("id")
            if not job_id:
                raise GenerationError("Horde did not return a generation ID.")
            logger.info(f"[HORDE] Submitted job {job_id} (max_length={body['params']['max_length']})")

            text = await self._poll(client, f"{base_url}/generate/text/status/{job_id}", headers, cancel)
            check(cancel)
            if text is not None:
                yield text

    async def _poll(
        self,
        client: httpx.AsyncClient,
        status_url: str,
        headers: Dict[str, str],
        cancel: Optional[CancelToken],
    ) -> Optional[str]:
        """Poll until done. Returns the first generation's text, or None if the job finished empty."""
        jq = CONFIG["job_queue"]
        interval = jq["poll_interval"]
        max_attempts = jq["max_poll_attempts"]

        for attempt in range(1, max_attempts + 1):
            if cancel is not None:
                await cancel.sleep(interval)
            else:
                await asyncio.sleep(interval)

            try:
                resp = await client.get(status_url, headers=headers)
            except httpx.TransportError as exc:
                logger.warning(f"[HORDE] Status poll {attempt} failed: {exc}")
                continue
            if resp.status_code >= 400:
                logger.debug(f"[HORDE] Status poll {attempt} returned {resp.status_code}")
                continue

            status = read_json(resp)
            if status.get("finished") == 1 or status.get("done"):
                generations = status.get("generations") or []
                logger.info(f"[HORDE] Job finished after {attempt} polls")
                return generations[0].get("text", "") if generations else None
            if status.get("faulted"):
                raise GenerationFaultedError("Horde Generation Faulted.")

        raise GenerationTimeoutError("Horde Generation Timed Out.", attempts=max_attempts)

    async def generate_draft(
        self,
        request: DraftRequest,
        settings: AppSettings,
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[str]:
        raise UnsupportedProviderError("Character generation is not supported on Horde.", provider="horde")
        yield  # pragma: no cover
