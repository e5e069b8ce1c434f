"""
LLM Module
==========

AI Inference Gateway and Response Validator.

Architecture:
- backends: one HTTP call per provider, failures classified transient or not
- gateway: retry/backoff, hard timeout, ordered multi-backend fallback
- validator: JSON extraction and coercion into the canonical schemas

Usage:
    from court_lite.llm import get_gateway

    gateway = get_gateway()
    text = await gateway.infer(system_instruction, prompt)
"""

from .backends import GeminiBackend, OpenAICompatibleBackend, InferenceRequest, InlineData, parse_data_url
from .errors import GatewayError, InferenceError, InferenceTimeoutError, ResponseValidationError
from .gateway import (
    BackendDescriptor,
    Fallthrough,
    InferenceGateway,
    get_gateway,
    close_gateway,
    retry_with_backoff,
    run_chain,
)

__all__ = [
    # Backends
    "GeminiBackend",
    "OpenAICompatibleBackend",
    "InferenceRequest",
    "InlineData",
    "parse_data_url",
    # Errors
    "GatewayError",
    "InferenceError",
    "InferenceTimeoutError",
    "ResponseValidationError",
    # Gateway
    "BackendDescriptor",
    "Fallthrough",
    "InferenceGateway",
    "get_gateway",
    "close_gateway",
    "retry_with_backoff",
    "run_chain",
]
