"""Tests for LLM field extraction (the chat model is mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from intakeflow.config import Settings
from intakeflow.services.extraction import (
    EXTRACTION_SYSTEM_PROMPT,
    ExtractionError,
    FieldExtractor,
    parse_extraction,
)


class TestParseExtraction:
    def test_plain_json(self):
        result = parse_extraction('{"value": "asap", "sentiment": "neutral", "human_requested": false}')
        assert result.value == "asap"
        assert result.human_requested is False

    def test_json_wrapped_in_prose(self):
        result = parse_extraction('Sure!\n```json\n{"value": ["mowing"], "sentiment": "positive"}\n```')
        assert result.value == ["mowing"]
        assert result.sentiment == "positive"

    def test_content_blocks(self):
        blocks = [{"type": "text", "text": '{"value": null, "human_requested": true}'}]
        result = parse_extraction(blocks)
        assert result.value is None
        assert result.human_requested is True

    @pytest.mark.parametrize("content", ["no json here", '{"value": ', '{"human_requested": "maybe"}'])
    def test_unparseable(self, content):
        with pytest.raises(ExtractionError):
            parse_extraction(content)


class TestFieldExtractor:
    def test_extract_sends_question_and_options(self, lawn_graph):
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content='{"value": ["mowing", "cleanup"]}')
        extractor = FieldExtractor(Settings(anthropic_api_key="k"), llm=llm)

        result = extractor.extract(lawn_graph.node("services"), "mow it and clean up the leaves")
        assert result.value == ["mowing", "cleanup"]

        system, human = llm.invoke.call_args[0][0]
        assert isinstance(system, SystemMessage)
        assert system.content == EXTRACTION_SYSTEM_PROMPT
        assert isinstance(human, HumanMessage)
        assert "Input type: multi_select" in human.content
        assert "cleanup (Spring/fall cleanup)" in human.content
        assert human.content.endswith("Customer reply: mow it and clean up the leaves")

    def test_bad_reply_raises(self, lawn_graph):
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="I can't help with that.")
        extractor = FieldExtractor(Settings(anthropic_api_key="k"), llm=llm)
        with pytest.raises(ExtractionError):
            extractor.extract(lawn_graph.node("timeline"), "whenever")
