from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from refinery.config import ModelConfig
from refinery.refinement.core import ModelInvocationError
from refinery.refinement.runtime.llm import LiteLLMChannel, ModelChannel


def _response(content, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30),
    )


def test_channel_satisfies_protocol():
    assert isinstance(LiteLLMChannel(ModelConfig()), ModelChannel)


def test_invoke_returns_text_tool_calls_and_usage():
    tool_call = SimpleNamespace(
        function=SimpleNamespace(
            name="ask_clarifying_questions",
            arguments='{"questions": [{"question": "Which format?"}]}',
        )
    )
    channel = LiteLLMChannel(ModelConfig(name="gpt-4o"))

    with patch("litellm.completion", return_value=_response("  Draft  ", [tool_call])) as completion:
        reply = asyncio.run(channel.invoke("prompt", system_prompt="system", tools=[{"type": "function"}]))

    kwargs = completion.call_args.kwargs
    assert kwargs["messages"][0] == {"role": "system", "content": "system"}
    assert kwargs["tool_choice"] == "auto"
    assert reply.text == "Draft"
    assert reply.structured_calls == [
        {"name": "ask_clarifying_questions", "arguments": {"questions": [{"question": "Which format?"}]}}
    ]
    assert reply.usage.total_tokens == 150
    assert reply.usage.cost_usd == pytest.approx((120 * 2.50 + 30 * 10.00) / 1_000_000)
    assert reply.usage.display == "$0.0006"
    assert reply.model == "gpt-4o"


def test_invoke_falls_back_for_non_chat_models():
    channel = LiteLLMChannel(ModelConfig(name="text-model", fallback_model="gpt-4o-mini"))
    side_effect = [RuntimeError("This is not a chat model"), _response("ok")]

    with patch("litellm.completion", side_effect=side_effect) as completion:
        reply = asyncio.run(channel.invoke("prompt"))

    assert completion.call_count == 2
    assert reply.model == "gpt-4o-mini"


def test_invoke_wraps_provider_errors():
    channel = LiteLLMChannel(ModelConfig(name="gpt-4o"))
    with patch("litellm.completion", side_effect=RuntimeError("rate limited")):
        with pytest.raises(ModelInvocationError, match="rate limited"):
            asyncio.run(channel.invoke("prompt"))
