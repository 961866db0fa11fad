import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .config import LLMSettings
from .errors import UpstreamError, truncate_message


logger = logging.getLogger("uvicorn.error")


def _extract_content(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts: List[str] = []
        for item in value:
            if isinstance(item, dict):
                text = item.get("text")
                if text:
                    parts.append(str(text))
        return "\n".join(parts).strip()
    return str(value or "").strip()


def _provider_error_detail(response: httpx.Response) -> str:
    try:
        error_payload = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(error_payload, dict):
        error = error_payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or "")
        if error:
            return str(error)
    return response.text or ""


class ChatCompletionClient(Protocol):
    def complete(self, *, system_prompt: str, user_prompt: str) -> str:
        pass


class HttpChatCompletionClient:
    """Single-shot client for an OpenAI-compatible ``/chat/completions`` endpoint.

    Every failure (timeout, transport error, non-2xx, malformed envelope,
    empty content) raises :class:`UpstreamError`. Nothing is retried here.
    """

    def __init__(self, settings: LLMSettings, *, http_client: Optional[httpx.Client] = None) -> None:
        if not settings.api_key:
            raise ValueError("LLM API key is required.")
        self._settings = settings
        self._http_client = http_client

    @property
    def model(self) -> str:
        return self._settings.model

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.auth_mode == "x-api-key":
            headers["x-api-key"] = self._settings.api_key
        else:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        return headers

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> httpx.Response:
        timeout = self._settings.timeout_seconds
        try:
            if self._http_client is not None:
                return self._http_client.post(endpoint, headers=self._headers(), json=payload, timeout=timeout)
            return httpx.post(endpoint, headers=self._headers(), json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"Analysis request timed out after {int(timeout)} seconds.") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Failed to call analysis provider: {exc}") from exc

    def complete(self, *, system_prompt: str, user_prompt: str) -> str:
        payload = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
        }
        endpoint = self._settings.base_url.rstrip("/") + "/chat/completions"
        response = self._post(endpoint, payload)

        if not response.is_success:
            detail = truncate_message(_provider_error_detail(response) or "Unknown provider error")
            raise UpstreamError(f"Analysis failed ({response.status_code}): {detail}")

        try:
            envelope = response.json()
        except json.JSONDecodeError as exc:
            raise UpstreamError("Analysis provider returned a non-JSON HTTP response.") from exc

        choices = envelope.get("choices") if isinstance(envelope, dict) else None
        if not choices or not isinstance(choices, list):
            raise UpstreamError("Analysis response did not contain choices.")

        first_choice = choices[0]
        message = first_choice.get("message") if isinstance(first_choice, dict) else None
        content = _extract_content(message.get("content") if isinstance(message, dict) else "")
        if not content:
            raise UpstreamError("Analysis provider returned empty assistant content.")

        logger.info("llm_completion_done model=%s chars=%s", self._settings.model, len(content))
        return content
