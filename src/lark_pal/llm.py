from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from .config import LLMConfig, ModelPricing, ProviderConfig
from .models import ModelReply, Role, Turn
from .tokens import DEFAULT_ENCODING, DEFAULT_IMAGE_TOKENS, TiktokenCounter, TokenCounter

logger = logging.getLogger("lark_pal_llm")


def turns_to_payload(turns: List[Turn]) -> List[Dict[str, Any]]:
    return [turn.to_payload() for turn in turns]


def compute_cost(usage: Dict[str, int], pricing: ModelPricing) -> float:
    prompt_tokens = int(usage.get("prompt_tokens", 0) or 0)
    completion_tokens = int(usage.get("completion_tokens", 0) or 0)
    return (
        prompt_tokens * pricing.input_price / 1_000_000
        + completion_tokens * pricing.output_price / 1_000_000
    )


class EchoModelBackend:
    """Offline backend that replies with the newest user text, for tests and smoke runs."""

    def __init__(self, encoding: str = DEFAULT_ENCODING) -> None:
        self._counter = TiktokenCounter(encoding=encoding)

    async def chat_complete(self, turns: List[Turn], model: str, max_output_tokens: int) -> ModelReply:
        for turn in reversed(turns):
            if turn.role == Role.USER and turn.text:
                return ModelReply(text=f"Echo: {turn.text}", model=model)
        return ModelReply(text="", model=model)

    def counter_for(self, model: str) -> TokenCounter:
        return self._counter

    def resolve_model(self, model: str) -> str:
        return model


class OpenAIChatBackend:
    """Chat-completion backend over one or more OpenAI-compatible providers.

    Each configured provider gets its own client; a model name is routed to the
    provider that lists it. Unknown model names fall back to the default model.
    """

    def __init__(self, config: LLMConfig) -> None:
        if not config.providers:
            raise RuntimeError("no LLM providers configured")
        self._config = config
        self._clients: Dict[str, OpenAI] = {}
        self._provider_for_model: Dict[str, ProviderConfig] = {}
        self._counters: Dict[str, TiktokenCounter] = {}
        for provider in config.providers:
            base_url = provider.base_url.rstrip("/") if provider.base_url else None
            self._clients[provider.name] = OpenAI(
                api_key=provider.api_key,
                base_url=base_url,
                timeout=config.timeout_seconds,
            )
            for model in provider.models:
                self._provider_for_model[model] = provider
        if config.model not in self._provider_for_model:
            raise RuntimeError(f"default model {config.model!r} is not offered by any provider")

    def is_model_available(self, model: str) -> bool:
        return model in self._provider_for_model

    def resolve_model(self, model: str) -> str:
        if model and self.is_model_available(model):
            return model
        if model and model != self._config.model:
            logger.warning("Model %s is not configured; using %s", model, self._config.model)
        return self._config.model

    def pricing_for(self, model: str) -> Optional[ModelPricing]:
        provider = self._provider_for_model.get(model)
        if provider is None:
            return None
        return provider.models.get(model)

    def currency_symbol(self, model: str) -> str:
        provider = self._provider_for_model.get(model)
        return provider.currency_symbol if provider is not None else ""

    def counter_for(self, model: str) -> TokenCounter:
        resolved = self.resolve_model(model)
        counter = self._counters.get(resolved)
        if counter is None:
            pricing = self.pricing_for(resolved)
            image_tokens = pricing.image_tokens if pricing is not None else DEFAULT_IMAGE_TOKENS
            counter = TiktokenCounter(encoding=self._config.encoding, image_tokens=image_tokens)
            self._counters[resolved] = counter
        return counter

    async def chat_complete(self, turns: List[Turn], model: str, max_output_tokens: int) -> ModelReply:
        resolved = self.resolve_model(model)
        return await asyncio.to_thread(self._request_completion, turns, resolved, max_output_tokens)

    def _request_completion(self, turns: List[Turn], model: str, max_output_tokens: int) -> ModelReply:
        provider = self._provider_for_model[model]
        logger.debug("Sending %d turns to %s: model %s", len(turns), provider.name, model)
        completion = self._clients[provider.name].chat.completions.create(
            model=model,
            messages=turns_to_payload(turns),
            max_tokens=max_output_tokens,
        )
        usage = _usage_dict(getattr(completion, "usage", None))
        cost = None
        pricing = self.pricing_for(model)
        if pricing is not None and usage:
            cost = compute_cost(usage, pricing)
            logger.debug(
                "Usage: %s Input Price: %s, Output Price: %s, Total Cost: %s%.4f",
                json.dumps(usage),
                pricing.input_price,
                pricing.output_price,
                provider.currency_symbol,
                cost,
            )
        if not completion.choices:
            raise RuntimeError(f"model {model} returned no choices")
        text = completion.choices[0].message.content or ""
        return ModelReply(text=text, model=model, usage=usage, cost=cost)


def _usage_dict(usage: Any) -> Dict[str, int]:
    if usage is None:
        return {}
    result: Dict[str, int] = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = getattr(usage, key, None)
        if value is not None:
            result[key] = int(value)
    return result


def build_model_backend(config: LLMConfig) -> OpenAIChatBackend:
    """Build the live backend; raises ``RuntimeError`` when none is usable."""
    if not any(provider.api_key for provider in config.providers):
        raise RuntimeError("no LLM provider API key configured")
    backend = OpenAIChatBackend(config)
    logger.info("LLM: OpenAI-compatible backend enabled (model=%s)", config.model)
    return backend
