"""Tests for the chat LLM adapters."""

from __future__ import annotations

import pytest

from conftest import FakeLLM
from stage_recall.llm import (
    LLMClassifier,
    LLMGenerator,
    collect_stream,
    parse_json_response,
    strip_code_fences,
)


class TestParsing:
    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'

    def test_parse_json_response(self):
        assert parse_json_response('```\n{"needsRetrieval": false}\n```') == {
            "needsRetrieval": False
        }

    @pytest.mark.parametrize("raw", ["", "   ", "not json", "```\n```"])
    def test_invalid_raises(self, raw):
        with pytest.raises(ValueError):
            parse_json_response(raw)


class TestAdapters:
    @pytest.mark.asyncio
    async def test_collect_stream_mixed_chunks(self):
        llm = FakeLLM(["Hello", {"type": "text_delta", "text": " world"}, {"type": "other"}])
        assert await collect_stream(llm, [], None) == "Hello world"

    @pytest.mark.asyncio
    async def test_classifier_returns_parsed_json(self):
        llm = FakeLLM(['{"needsRetrieval": ', {"type": "text_delta", "text": "true}"}])
        classifier = LLMClassifier(llm)

        result = await classifier.complete_json("system", "user prompt")

        assert result == {"needsRetrieval": True}
        assert llm.calls[0]["system"] == "system"
        assert llm.calls[0]["messages"] == [{"role": "user", "content": "user prompt"}]

    @pytest.mark.asyncio
    async def test_generator_passes_payload(self):
        llm = FakeLLM(["Thanks for sharing that."])
        generator = LLMGenerator(llm)
        messages = [{"role": "user", "content": "Hi"}]

        reply = await generator.generate("system content", messages, max_tokens=100)

        assert reply == "Thanks for sharing that."
        assert llm.calls[0] == {"messages": messages, "system": "system content"}

    @pytest.mark.asyncio
    async def test_generator_stops_at_max_tokens(self):
        llm = FakeLLM(["a" * 40, "b" * 40, "c" * 40])
        generator = LLMGenerator(llm)

        reply = await generator.generate("system", [{"role": "user", "content": "Hi"}], 15)

        assert reply == "a" * 40 + "b" * 20

    @pytest.mark.asyncio
    async def test_collect_stream_without_limit_reads_everything(self):
        llm = FakeLLM(["a" * 40, "b" * 40])
        assert await collect_stream(llm, [], None) == "a" * 40 + "b" * 40
