"""
Inference Backends
==================

Thin async HTTP clients for the external reasoning services:
- GeminiBackend: Google Gemini REST `generateContent` (text, images, audio)
- OpenAICompatibleBackend: `/chat/completions` providers (DeepSeek), text only

Backends do one call and classify failures. Retry, timeout and fallback live
in the gateway.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import httpx

from .errors import InferenceError

logger = logging.getLogger(__name__)


# HTTP statuses worth retrying
TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}

TRANSIENT_MARKERS = (
    "overloaded",
    "resource_exhausted",
    "resource exhausted",
    "timeout",
    "timed out",
    "unavailable",
)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]+)?(;base64)?,(?P<data>.*)$", re.DOTALL)


@dataclass
class InlineData:
    """Base64 attachment (image or audio)"""
    mime_type: str
    data: str


@dataclass
class InferenceRequest:
    """One inference call, independent of the backend"""
    prompt: str
    system_instruction: Optional[str] = None
    json_mode: bool = False
    temperature: float = 0.7
    images: List[InlineData] = field(default_factory=list)
    audio: List[InlineData] = field(default_factory=list)
    model_hint: Optional[str] = None
    max_tokens: int = 8192

    @property
    def has_attachments(self) -> bool:
        return bool(self.images or self.audio)


def parse_data_url(url: str, default_mime: str = "image/jpeg") -> Optional[InlineData]:
    """Split a `data:<mime>;base64,<data>` URL, None if it is not one"""
    if not url or not url.startswith("data:"):
        return None
    match = _DATA_URL_RE.match(url)
    if not match:
        return None
    return InlineData(mime_type=match.group("mime") or default_mime, data=match.group("data"))


def is_transient(status: Optional[int], message: str = "") -> bool:
    """Classify a provider failure as transient (retryable) or not"""
    if status is not None and status in TRANSIENT_STATUSES:
        return True
    if status is not None and 400 <= status < 500:
        return False
    lowered = (message or "").lower()
    return any(marker in lowered for marker in TRANSIENT_MARKERS)


class HttpBackend:
    """Shared lazy httpx client handling"""

    name = "http"

    def __init__(self, timeout: float = 120.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        """Close HTTP client"""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, **kwargs) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body = e.response.text[:200]
            logger.error(f"{self.name} API error: {status} - {body}")
            raise InferenceError(
                f"HTTP {status}: {body}",
                status=status,
                transient=is_transient(status, body),
                backend=self.name,
            ) from e
        except httpx.TimeoutException as e:
            logger.warning(f"{self.name} request timed out: {e}")
            raise InferenceError(f"timeout: {e}", transient=True, backend=self.name) from e
        except httpx.TransportError as e:
            logger.warning(f"{self.name} transport failure: {e}")
            raise InferenceError(f"transport failure: {e}", transient=True, backend=self.name) from e
        except ValueError as e:
            # Body was not JSON
            raise InferenceError(f"invalid response body: {e}", status=502, transient=True, backend=self.name) from e


class GeminiBackend(HttpBackend):
    """Google Gemini via the public REST API"""

    def __init__(
        self,
        model: str,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.name = f"gemini:{model}"

    def build_payload(self, request: InferenceRequest) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []
        for item in request.audio:
            parts.append({"inline_data": {"mime_type": item.mime_type, "data": item.data}})
        parts.append({"text": request.prompt})
        for item in request.images:
            parts.append({"inline_data": {"mime_type": item.mime_type, "data": item.data}})

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if request.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
        if request.json_mode:
            payload["generationConfig"]["responseMimeType"] = "application/json"
        return payload

    async def generate(self, request: InferenceRequest) -> str:
        """Generate via Google Gemini API"""
        if not self.api_key:
            raise InferenceError("Gemini API key not set", status=401, transient=False, backend=self.name)

        url = f"{self.base_url}/models/{self.model}:generateContent"
        data = await self._post(url, json=self.build_payload(request), params={"key": self.api_key})

        # Blocked/filtered responses come back without candidates
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            logger.warning(f"Gemini response missing content: {str(data)[:200]}")
            return ""

        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class OpenAICompatibleBackend(HttpBackend):
    """OpenAI-compatible `/chat/completions` provider (DeepSeek)"""

    def __init__(
        self,
        model: str,
        api_key: Optional[str],
        base_url: str,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
        provider: str = "deepseek",
    ):
        super().__init__(timeout=timeout, client=client)
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.name = f"{provider}:{model}"

    async def generate(self, request: InferenceRequest) -> str:
        """Generate via an OpenAI-compatible API. Text only."""
        if not self.api_key:
            raise InferenceError("API key not set", status=401, transient=False, backend=self.name)
        if request.has_attachments:
            raise InferenceError("attachments not supported", status=400, transient=False, backend=self.name)

        messages = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        messages.append({"role": "user", "content": request.prompt})

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        data = await self._post(f"{self.base_url}/chat/completions", json=payload, headers=headers)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise InferenceError(
                f"Response missing content: {e}", status=502, transient=True, backend=self.name
            ) from e

        return content or ""
