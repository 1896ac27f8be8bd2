"""Tests for transcript extraction parsing and the OpenAI extraction adapter."""

import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from conftest import LOAN_CALL_ANALYSIS
from loancall.errors import ExtractionFailed, ExtractionMalformed
from loancall.extraction import EXTRACTION_SYSTEM_PROMPT, Extractor, parse_analysis

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _fake_client(content=None, error=None, captured=None):
    async def create(**kwargs):
        if captured is not None:
            captured.update(kwargs)
        if error:
            raise error
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


class TestParseAnalysis:
    def test_full_loan_reply(self):
        analysis = parse_analysis(LOAN_CALL_ANALYSIS)
        info = analysis.loan_info
        assert info.loan_amount == 450000
        assert info.loan_type == "Conventional"
        assert info.term == 30
        assert "Single Family" in info.property_type
        assert info.rate is None
        assert "rate" not in analysis.to_json_dict()["loan_info"]

    def test_numbers_with_currency_and_units(self):
        reply = json.dumps(
            {
                "summary": "Refi",
                "loan_info": {"loan_amount": "$312,500", "rate": "6.75%", "term": "15 years"},
            }
        )
        info = parse_analysis(reply).loan_info
        assert info.loan_amount == 312500
        assert info.rate == 6.75
        assert info.term == 15

    def test_blank_fields_are_absent(self):
        reply = json.dumps({"summary": "s", "loan_info": {"loan_type": "", "property_type": "  "}})
        assert parse_analysis(reply).loan_info.to_json_dict() == {}

    def test_zero_and_negative_figures_are_absent(self):
        reply = json.dumps(
            {"summary": "s", "loan_info": {"loan_amount": 0, "term": 0, "rate": -1, "loan_type": "FHA"}}
        )
        info = parse_analysis(reply).loan_info
        assert info.loan_amount is None
        assert info.term is None
        assert info.rate is None
        assert info.to_json_dict() == {"loan_type": "FHA"}

    def test_null_sections_default_empty(self):
        analysis = parse_analysis(
            json.dumps({"summary": "s", "key_points": None, "action_items": None, "loan_info": None})
        )
        assert analysis.key_points == []
        assert analysis.action_items == []
        assert analysis.loan_info.missing_fields() == [
            "loan_type", "loan_amount", "property_type", "rate", "term"
        ]

    @pytest.mark.parametrize(
        "reply",
        [
            "",
            "not json at all",
            "[1, 2, 3]",
            json.dumps({"key_points": []}),
            json.dumps({"summary": "s", "key_points": "one long string"}),
            json.dumps({"summary": "s", "loan_info": {"term": "thirty"}}),
        ],
    )
    def test_malformed_replies(self, reply):
        with pytest.raises(ExtractionMalformed):
            parse_analysis(reply)


class TestExtractor:
    @pytest.mark.asyncio
    async def test_requests_json_mode_with_fixed_prompt(self):
        captured = {}
        extractor = Extractor(_fake_client(LOAN_CALL_ANALYSIS, captured=captured), model="gpt-test")

        analysis = await extractor.extract("the transcript")

        assert analysis.summary
        assert captured["model"] == "gpt-test"
        assert captured["response_format"] == {"type": "json_object"}
        assert captured["messages"][0] == {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT}
        assert captured["messages"][1] == {"role": "user", "content": "the transcript"}

    @pytest.mark.asyncio
    async def test_api_error_is_extraction_failed(self):
        error = openai.APIConnectionError(request=_REQUEST)
        with pytest.raises(ExtractionFailed):
            await Extractor(_fake_client(error=error)).extract("t")

    @pytest.mark.asyncio
    async def test_timeout_is_extraction_failed(self):
        error = openai.APITimeoutError(request=_REQUEST)
        with pytest.raises(ExtractionFailed, match="timed out"):
            await Extractor(_fake_client(error=error)).extract("t")

    @pytest.mark.asyncio
    async def test_prose_reply_is_malformed(self):
        with pytest.raises(ExtractionMalformed):
            await Extractor(_fake_client("Here is your summary: ...")).extract("t")

    @pytest.mark.asyncio
    async def test_missing_client_is_extraction_failed(self):
        with pytest.raises(ExtractionFailed, match="not configured"):
            await Extractor(None).extract("t")
