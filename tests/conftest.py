"""
Shared test fixtures: a scripted model backend speaking the OpenAI chunk format.
"""

import asyncio
import json
from typing import Any

import pytest

from polychat.config import Settings
from polychat.llm.base import BaseLLM, ModelRequest
from polychat.llm.openai import OpenAIDeltaNormalizer


def text_chunks(*pieces: str, finish_reason: str = "stop") -> list[dict[str, Any]]:
    """Chunks streaming ``pieces`` of text, then a finish."""
    chunks = [
        {"choices": [{"index": 0, "delta": {"content": piece}}]}
        for piece in pieces
    ]
    chunks.append({"choices": [{"index": 0, "delta": {}, "finish_reason": finish_reason}]})
    return chunks


def tool_call_chunks(
    *calls: tuple[str, str, str],
    text: str = "",
    fragment_size: int = 4,
) -> list[dict[str, Any]]:
    """Chunks for one turn with ``(id, name, raw_arguments)`` tool calls."""
    chunks: list[dict[str, Any]] = []
    if text:
        chunks.append({"choices": [{"index": 0, "delta": {"content": text}}]})

    for index, (call_id, name, raw) in enumerate(calls):
        chunks.append({"choices": [{"index": 0, "delta": {"tool_calls": [{
            "index": index,
            "id": call_id,
            "type": "function",
            "function": {"name": name, "arguments": ""},
        }]}}]})
        for start in range(0, len(raw), fragment_size):
            chunks.append({"choices": [{"index": 0, "delta": {"tool_calls": [{
                "index": index,
                "function": {"arguments": raw[start:start + fragment_size]},
            }]}}]})

    chunks.append({"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]})
    return chunks


def add_call(call_id: str = "call_1", a: int = 2, b: int = 2) -> tuple[str, str, str]:
    return (call_id, "add", json.dumps({"a": a, "b": b}))


class ScriptedLLM(BaseLLM):
    """Plays back one script step per call; the last step repeats.

    A step is a list of chunks or an exception raised before streaming.
    Inside a step an exception is raised at that point and a float sleeps.
    """

    def __init__(self, script: list[Any], model: str = "gpt-4o"):
        super().__init__(api_key="test", model=model)
        self.script = list(script)
        self.requests: list[ModelRequest] = []

    @property
    def provider_name(self) -> str:
        return "scripted"

    def normalizer(self) -> OpenAIDeltaNormalizer:
        return OpenAIDeltaNormalizer()

    async def send(self, request: ModelRequest):
        self.requests.append(request)
        step = self.script[min(len(self.requests), len(self.script)) - 1]
        if isinstance(step, BaseException):
            raise step
        for item in step:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, float):
                await asyncio.sleep(item)
                continue
            yield item


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)
