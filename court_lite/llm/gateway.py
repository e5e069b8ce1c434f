"""
AI Inference Gateway
====================

Uniform call contract over one or more inference backends:

    text = await gateway.infer(system_instruction, prompt, json_mode=True)

Backend selection:
- default: fast Gemini model
- model_hint="pro" or image attachments: high-capability multimodal model
- optional secondary provider (text only) tried before Gemini
- stable fallback model tried after transient failure of the primary
- audio (transcription): the fast model only, no fallback

Retry policy: transient failures are retried with exponential backoff
(base_delay * 2**attempt) up to a bounded attempt count; a hard wall-clock
timeout races every attempt and counts as a transient failure.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..config import Settings, get_settings
from ..schemas import LLMMode
from .backends import GeminiBackend, InferenceRequest, InlineData, OpenAICompatibleBackend
from .errors import InferenceError, InferenceTimeoutError, ResponseValidationError
from .validator import extract_json, safe_log_content

logger = logging.getLogger(__name__)

T = TypeVar("T")

MODEL_HINT_PRO = "pro"

# Appended to the system instruction when a JSON answer could not be parsed
JSON_REPAIR_INSTRUCTION = (
    "Return ONLY one valid JSON object matching the requested structure. "
    "No prose, no markdown, no explanations."
)


class Fallthrough(str, Enum):
    """When a failing backend hands over to the next one in the chain"""
    ANY = "any"              # any failure
    TRANSIENT = "transient"  # only transient failures


@dataclass
class BackendDescriptor:
    """One entry of an ordered fallback chain"""
    name: str
    backend: Any
    fallthrough: Fallthrough = Fallthrough.TRANSIENT


async def with_timeout(awaitable: Awaitable[T], seconds: Optional[float], backend: Optional[str] = None) -> T:
    """Race an inference call against a hard wall-clock timeout"""
    if not seconds:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise InferenceTimeoutError(seconds, backend=backend) from e


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 5,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "",
) -> T:
    """
    Run `operation`, retrying transient InferenceErrors.

    Non-transient failures are raised immediately; the last transient failure
    is raised once the attempts are exhausted.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except InferenceError as e:
            if not e.transient or attempt == attempts - 1:
                raise
            wait = base_delay * (2 ** attempt)
            logger.warning(
                f"Transient failure from {label or e.backend} "
                f"(attempt {attempt + 1}/{attempts}): {e}; retrying in {wait:.1f}s"
            )
            await sleep(wait)
    raise AssertionError("unreachable")


async def run_chain(
    chain: List[BackendDescriptor],
    request: InferenceRequest,
    *,
    attempts: int = 5,
    base_delay: float = 1.0,
    timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> str:
    """
    Attempt each backend in order, classify its failure, fall through.

    Each backend gets the full retry policy. A backend hands over to the next
    one only when its descriptor allows it for the failure observed; the last
    backend's failure is always raised.
    """
    if not chain:
        raise InferenceError("No inference backend configured", transient=False)

    for index, descriptor in enumerate(chain):
        def attempt(descriptor=descriptor):
            return with_timeout(descriptor.backend.generate(request), timeout, descriptor.name)

        try:
            return await retry_with_backoff(
                attempt, attempts=attempts, base_delay=base_delay, sleep=sleep, label=descriptor.name
            )
        except InferenceError as e:
            is_last = index == len(chain) - 1
            allowed = descriptor.fallthrough == Fallthrough.ANY or e.transient
            if is_last or not allowed:
                logger.error(f"Inference failed on {descriptor.name}: {e!r}")
                raise
            logger.warning(f"Backend {descriptor.name} failed ({e!r}); falling back to {chain[index + 1].name}")

    raise AssertionError("unreachable")


class InferenceGateway:
    """
    Gateway over the configured backends.

    Usage:
        gateway = get_gateway()
        text = await gateway.infer("You are a clerk.", "Summarize...")
        data = await gateway.infer_json("Return JSON.", "...")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        backends: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.backends = backends if backends is not None else self._build_backends()
        self._sleep = sleep

    def _build_backends(self) -> Dict[str, Any]:
        s = self.settings
        backends: Dict[str, Any] = {
            "flash": GeminiBackend(s.gemini_flash_model, s.gemini_api_key, s.gemini_base_url, s.llm_timeout),
            "pro": GeminiBackend(s.gemini_pro_model, s.gemini_api_key, s.gemini_base_url, s.llm_timeout),
            "fallback": GeminiBackend(s.gemini_fallback_model, s.gemini_api_key, s.gemini_base_url, s.llm_timeout),
        }
        if s.secondary_provider_enabled:
            backends["secondary"] = OpenAICompatibleBackend(
                s.deepseek_model, s.deepseek_api_key, s.deepseek_base_url, s.llm_timeout
            )
        return backends

    async def close(self):
        """Close backend HTTP clients"""
        for backend in self.backends.values():
            close = getattr(backend, "close", None)
            if close is not None:
                await close()

    def select_chain(self, request: InferenceRequest) -> List[BackendDescriptor]:
        """Ordered fallback chain for a request"""
        chain: List[BackendDescriptor] = []
        if request.audio:
            # Transcription: the fast backend alone, base retry only
            if "flash" in self.backends:
                chain.append(BackendDescriptor("flash", self.backends["flash"], Fallthrough.TRANSIENT))
            return chain

        wants_pro = request.model_hint == MODEL_HINT_PRO or bool(request.images)

        if not wants_pro and "secondary" in self.backends:
            chain.append(BackendDescriptor("secondary", self.backends["secondary"], Fallthrough.ANY))

        primary = "pro" if wants_pro else "flash"
        if primary in self.backends:
            chain.append(BackendDescriptor(primary, self.backends[primary], Fallthrough.TRANSIENT))
        if "fallback" in self.backends:
            chain.append(BackendDescriptor("fallback", self.backends["fallback"], Fallthrough.TRANSIENT))
        return chain

    async def infer(
        self,
        system_instruction: Optional[str],
        prompt: str,
        *,
        json_mode: bool = False,
        temperature: float = 0.7,
        images: Optional[List[InlineData]] = None,
        audio: Optional[List[InlineData]] = None,
        model_hint: Optional[str] = None,
    ) -> str:
        """
        Run one inference request through the fallback chain.

        Raises:
            InferenceError: transport/provider failure after retries
        """
        if self.settings.llm_mode == LLMMode.NONE:
            raise InferenceError("LLM mode is NONE", transient=False)

        request = InferenceRequest(
            prompt=prompt,
            system_instruction=system_instruction,
            json_mode=json_mode,
            temperature=temperature,
            images=list(images or []),
            audio=list(audio or []),
            model_hint=model_hint,
        )
        text = await run_chain(
            self.select_chain(request),
            request,
            attempts=self.settings.llm_max_attempts,
            base_delay=self.settings.llm_backoff_base,
            timeout=self.settings.llm_timeout,
            sleep=self._sleep,
        )
        logger.debug(f"LLM response: {safe_log_content(text)}")
        return text

    async def infer_json(
        self,
        system_instruction: Optional[str],
        prompt: str,
        *,
        coerce: Optional[Callable[[Any], T]] = None,
        validation_retries: int = 1,
        **kwargs,
    ) -> Any:
        """
        Run a JSON-mode request and validate the answer.

        A parse or coercion failure re-issues the request with a stricter
        instruction up to `validation_retries` times.

        Raises:
            InferenceError: transport failure
            ResponseValidationError: malformed answer after all retries
        """
        instruction = system_instruction
        last_error: Optional[ResponseValidationError] = None

        for attempt in range(validation_retries + 1):
            text = await self.infer(instruction, prompt, json_mode=True, **kwargs)
            try:
                payload = extract_json(text)
                return coerce(payload) if coerce else payload
            except ResponseValidationError as e:
                last_error = e
                logger.warning(f"JSON validation failed (attempt {attempt + 1}): {e}")
                instruction = f"{system_instruction or ''}\n\n{JSON_REPAIR_INSTRUCTION}".strip()

        raise last_error


# Singleton
_gateway: Optional[InferenceGateway] = None


def get_gateway() -> InferenceGateway:
    """Get singleton gateway"""
    global _gateway
    if _gateway is None:
        _gateway = InferenceGateway()
    return _gateway


async def close_gateway():
    """Close the singleton gateway, if created"""
    global _gateway
    if _gateway is not None:
        await _gateway.close()
        _gateway = None
