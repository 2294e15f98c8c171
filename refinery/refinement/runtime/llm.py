"""
Model invocation channel.

The orchestrator only sees ``ModelChannel.invoke``; ``LiteLLMChannel`` is the
shipped implementation and routes every call through ``litellm.completion``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ...config import ModelConfig
from ...pricing import call_cost_usd, has_price
from ..core import ModelInvocationError

logger = logging.getLogger(__name__)


@dataclass
class ModelUsage:
    prompt_tokens: int
    completion_tokens: int
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def display(self) -> str:
        return f"${self.cost_usd:.4f}"


@dataclass
class ModelReply:
    text: str
    structured_calls: list[dict[str, Any]] = field(default_factory=list)
    usage: ModelUsage | None = None
    model: str = ""


@runtime_checkable
class ModelChannel(Protocol):
    """Opaque request/response channel to a language model."""

    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelReply:
        ...


def _response_usage(response: Any, model: str) -> ModelUsage | None:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    # OpenAI-style names first, Anthropic-style as the fallback.
    prompt_tokens = int(getattr(usage, "prompt_tokens", None) or getattr(usage, "input_tokens", 0) or 0)
    completion_tokens = int(getattr(usage, "completion_tokens", None) or getattr(usage, "output_tokens", 0) or 0)
    return ModelUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cost_usd=call_cost_usd(model, prompt_tokens, completion_tokens),
    )


def _is_non_chat_model_error(exc: Exception) -> bool:
    err_text = str(exc).lower()
    return (
        "not a chat model" in err_text
        or "v1/chat/completions" in err_text
        or "did you mean to use v1/completions" in err_text
    )


def _extract_tool_calls(message: Any) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []
    for call in getattr(message, "tool_calls", None) or []:
        function = getattr(call, "function", None)
        if function is None and isinstance(call, dict):
            function = call.get("function")
        if function is None:
            continue
        if isinstance(function, dict):
            name = function.get("name", "")
            arguments = function.get("arguments", "")
        else:
            name = getattr(function, "name", "")
            arguments = getattr(function, "arguments", "")
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError:
                logger.warning("Discarding tool call %s with malformed arguments", name)
                continue
        calls.append({"name": str(name or ""), "arguments": arguments})
    return calls


class LiteLLMChannel:
    """ModelChannel backed by LiteLLM with a fallback for non-chat models."""

    def __init__(self, config: ModelConfig):
        self.config = config

    @property
    def model_id(self) -> str:
        return self.config.name

    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelReply:
        import litellm

        litellm.drop_params = True  # not every provider accepts temperature/tools

        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        models_to_try = [self.config.name]
        if self.config.fallback_model and self.config.fallback_model != self.config.name:
            models_to_try.append(self.config.fallback_model)

        last_error: Exception | None = None
        for idx, model in enumerate(models_to_try):
            completion_kwargs: dict[str, Any] = {
                "model": model,
                "messages": messages,
                "max_tokens": self.config.max_output_tokens,
                "temperature": self.config.temperature,
            }
            if tools:
                completion_kwargs["tools"] = tools
                completion_kwargs["tool_choice"] = "auto"
            try:
                response = await asyncio.to_thread(litellm.completion, **completion_kwargs)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                if not _is_non_chat_model_error(exc) or idx == len(models_to_try) - 1:
                    break
                logger.warning("Model %s rejected chat completions; trying %s", model, models_to_try[idx + 1])
                continue

            message = response.choices[0].message
            usage = _response_usage(response, model)
            if not has_price(model):
                logger.debug("Unknown model '%s' - cost tracking disabled for this call", model)
            if usage is not None:
                logger.info(
                    "%s: %d prompt / %d completion tokens (%s)",
                    model,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    usage.display,
                )
            return ModelReply(
                text=str(getattr(message, "content", "") or "").strip(),
                structured_calls=_extract_tool_calls(message),
                usage=usage,
                model=model,
            )

        if last_error is not None:
            raise ModelInvocationError(
                f"Configured model '{self.config.name}' failed. Last error: {last_error}"
            ) from last_error
        raise ModelInvocationError("Unknown completion failure.")
