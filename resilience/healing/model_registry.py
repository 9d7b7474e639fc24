"""Known context window sizes for popular LLM models.

Used as a fallback when a provider error does not carry token numbers.
Values follow the providers' published model documentation.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelInfo:
    """Context window metadata for one model."""

    max_tokens: int
    description: str = ""


def _m(max_tokens: int, description: str) -> ModelInfo:
    return ModelInfo(max_tokens=max_tokens, description=description)


MODEL_REGISTRY: dict[str, dict[str, ModelInfo]] = {
    "anthropic": {
        "claude-opus-4-5": _m(200000, "Claude Opus 4.5"),
        "claude-sonnet-4-5": _m(200000, "Claude Sonnet 4.5"),
        "claude-haiku-4-5": _m(200000, "Claude Haiku 4.5"),
        "claude-opus-4": _m(200000, "Claude Opus 4"),
        "claude-sonnet-4": _m(200000, "Claude Sonnet 4"),
        "claude-3-5-sonnet-20241022": _m(200000, "Claude 3.5 Sonnet (Oct 2024)"),
        "claude-3-5-sonnet-20240620": _m(200000, "Claude 3.5 Sonnet (Jun 2024)"),
        "claude-3-5-haiku-20241022": _m(200000, "Claude 3.5 Haiku"),
        "claude-3-opus-20240229": _m(200000, "Claude 3 Opus"),
        "claude-3-sonnet-20240229": _m(200000, "Claude 3 Sonnet"),
        "claude-3-haiku-20240307": _m(200000, "Claude 3 Haiku"),
        "claude-2.1": _m(200000, "Claude 2.1"),
        "claude-2.0": _m(100000, "Claude 2.0"),
        "claude-instant-1.2": _m(100000, "Claude Instant 1.2"),
    },
    "openai": {
        "gpt-5": _m(200000, "GPT-5"),
        "gpt-4-turbo": _m(128000, "GPT-4 Turbo"),
        "gpt-4-turbo-2024-04-09": _m(128000, "GPT-4 Turbo (Apr 2024)"),
        "gpt-4-turbo-preview": _m(128000, "GPT-4 Turbo Preview"),
        "gpt-4-0125-preview": _m(128000, "GPT-4 Turbo Preview (Jan 2024)"),
        "gpt-4-1106-preview": _m(128000, "GPT-4 Turbo Preview (Nov 2023)"),
        "gpt-4": _m(8192, "GPT-4"),
        "gpt-4-0613": _m(8192, "GPT-4 (Jun 2023)"),
        "gpt-4-32k": _m(32768, "GPT-4 32k"),
        "gpt-4-32k-0613": _m(32768, "GPT-4 32k (Jun 2023)"),
        "gpt-4o": _m(128000, "GPT-4o"),
        "gpt-4o-2024-11-20": _m(128000, "GPT-4o (Nov 2024)"),
        "gpt-4o-2024-08-06": _m(128000, "GPT-4o (Aug 2024)"),
        "gpt-4o-2024-05-13": _m(128000, "GPT-4o (May 2024)"),
        "gpt-4o-mini": _m(128000, "GPT-4o mini"),
        "gpt-4o-mini-2024-07-18": _m(128000, "GPT-4o mini (Jul 2024)"),
        "o1": _m(200000, "O1"),
        "o1-preview": _m(128000, "O1 Preview"),
        "o1-mini": _m(128000, "O1 Mini"),
        "o1-2024-12-17": _m(200000, "O1 (Dec 2024)"),
        "o3-mini": _m(200000, "O3 Mini"),
        "gpt-3.5-turbo": _m(16385, "GPT-3.5 Turbo"),
        "gpt-3.5-turbo-0125": _m(16385, "GPT-3.5 Turbo (Jan 2024)"),
        "gpt-3.5-turbo-1106": _m(16385, "GPT-3.5 Turbo (Nov 2023)"),
        "gpt-3.5-turbo-16k": _m(16385, "GPT-3.5 Turbo 16k"),
    },
    "google": {
        "gemini-2.0-flash-exp": _m(1000000, "Gemini 2.0 Flash Experimental"),
        "gemini-2.0-flash-thinking-exp-1219": _m(32000, "Gemini 2.0 Flash Thinking (Dec 2024)"),
        "gemini-1.5-pro": _m(2000000, "Gemini 1.5 Pro"),
        "gemini-1.5-pro-002": _m(2000000, "Gemini 1.5 Pro 002"),
        "gemini-1.5-pro-001": _m(2000000, "Gemini 1.5 Pro 001"),
        "gemini-1.5-flash": _m(1000000, "Gemini 1.5 Flash"),
        "gemini-1.5-flash-002": _m(1000000, "Gemini 1.5 Flash 002"),
        "gemini-1.5-flash-001": _m(1000000, "Gemini 1.5 Flash 001"),
        "gemini-1.5-flash-8b": _m(1000000, "Gemini 1.5 Flash 8B"),
        "gemini-1.0-pro": _m(32000, "Gemini 1.0 Pro"),
        "gemini-1.0-pro-vision": _m(16000, "Gemini 1.0 Pro Vision"),
        "gemini-pro": _m(32000, "Gemini Pro (legacy alias)"),
        "gemini-pro-vision": _m(16000, "Gemini Pro Vision (legacy alias)"),
        "claude-sonnet-4-5": _m(200000, "Claude Sonnet 4.5 (via Google)"),
        "claude-sonnet-4-5-thinking": _m(200000, "Claude Sonnet 4.5 Thinking (via Google)"),
        "claude-opus-4-5-thinking": _m(200000, "Claude Opus 4.5 Thinking (via Google)"),
    },
    "opencode": {
        "grok-code": _m(128000, "Grok Code"),
        "big-pickle": _m(128000, "Big Pickle"),
    },
    "bedrock": {
        "anthropic.claude-3-5-sonnet-20241022-v2:0": _m(200000, "Claude 3.5 Sonnet (Bedrock)"),
        "anthropic.claude-3-5-sonnet-20240620-v1:0": _m(200000, "Claude 3.5 Sonnet Jun 2024 (Bedrock)"),
        "anthropic.claude-3-5-haiku-20241022-v1:0": _m(200000, "Claude 3.5 Haiku (Bedrock)"),
        "anthropic.claude-3-opus-20240229-v1:0": _m(200000, "Claude 3 Opus (Bedrock)"),
        "anthropic.claude-3-sonnet-20240229-v1:0": _m(200000, "Claude 3 Sonnet (Bedrock)"),
        "anthropic.claude-3-haiku-20240307-v1:0": _m(200000, "Claude 3 Haiku (Bedrock)"),
    },
    "azure": {
        "gpt-4-turbo": _m(128000, "GPT-4 Turbo (Azure)"),
        "gpt-4": _m(8192, "GPT-4 (Azure)"),
        "gpt-4-32k": _m(32768, "GPT-4 32k (Azure)"),
        "gpt-35-turbo": _m(16385, "GPT-3.5 Turbo (Azure)"),
        "gpt-35-turbo-16k": _m(16385, "GPT-3.5 Turbo 16k (Azure)"),
    },
}


def get_model_info(provider_id: str | None, model_id: str | None) -> ModelInfo | None:
    """Look up registry entry for a provider/model pair."""
    if not provider_id or not model_id:
        return None
    provider = MODEL_REGISTRY.get(provider_id)
    if not provider:
        return None
    return provider.get(model_id)


def get_model_max_tokens(provider_id: str | None, model_id: str | None) -> int | None:
    """Context window size for a provider/model pair, None when unknown.

    Args:
        provider_id: Provider identifier (e.g. "anthropic", "openai")
        model_id: Model identifier (e.g. "claude-opus-4-5", "gpt-4-turbo")

    Returns:
        max tokens if the pair is registered, None otherwise

    """
    info = get_model_info(provider_id, model_id)
    return info.max_tokens if info else None


def register_model(provider_id: str, model_id: str, max_tokens: int, description: str = "") -> None:
    """Add or replace a registry entry (for private or newly released models)."""
    MODEL_REGISTRY.setdefault(provider_id, {})[model_id] = ModelInfo(max_tokens, description)
