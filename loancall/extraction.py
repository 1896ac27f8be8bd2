"""
Structured loan-data extraction from call transcripts via an OpenAI chat model.
"""

from __future__ import annotations

import json
from typing import Optional

import openai
import structlog
from openai import AsyncOpenAI
from pydantic import ValidationError

from loancall.errors import ExtractionFailed, ExtractionMalformed
from loancall.models import CallAnalysis

log = structlog.get_logger(__name__)

EXTRACTION_SYSTEM_PROMPT = """You are an AI assistant specializing in mortgage lending.
Analyze the transcript of a call between a loan officer and a client to extract key details.
Respond with a single JSON object and nothing else, with exactly these sections:

1. summary - A concise summary of the conversation
2. key_points - An array of important points discussed, in the order they came up
3. action_items - An array of next steps the loan officer should take
4. loan_info - An object with the following properties, included ONLY when the
   transcript gives evidence for them (omit a property entirely otherwise; never
   guess and never use 0 or an empty string as a placeholder):
   - loan_type (e.g. Conventional, FHA, VA, Jumbo, USDA)
   - loan_amount (a bare number without commas or currency symbols)
   - property_type (e.g. Single Family, Condo, Townhouse, Multi-Family)
   - rate (interest rate percentage as a bare number)
   - term (loan term in years, as an integer)
"""


class Extractor:
    """Runs the fixed extraction prompt and parses the JSON reply. Does not retry."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI],
        model: str = "gpt-4-turbo-preview",
        timeout: float = 120.0,
    ):
        self.client = client
        self.model = model
        self.timeout = timeout

    async def extract(self, transcript: str) -> CallAnalysis:
        if self.client is None:
            raise ExtractionFailed("OpenAI API key is not configured")
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                    {"role": "user", "content": transcript},
                ],
                response_format={"type": "json_object"},
                temperature=0,
                timeout=self.timeout,
            )
        except openai.APITimeoutError as e:
            raise ExtractionFailed("Extraction timed out") from e
        except openai.APIError as e:
            log.warning("extraction_api_error", model=self.model, error=str(e))
            raise ExtractionFailed(f"Extraction request failed: {e}") from e

        if not response.choices:
            raise ExtractionMalformed("Extraction returned no choices")
        content = response.choices[0].message.content
        return parse_analysis(content)


def parse_analysis(content) -> CallAnalysis:
    """Parse a model reply into a CallAnalysis or raise ExtractionMalformed."""
    if not content:
        raise ExtractionMalformed("Extraction returned an empty response")
    try:
        data = json.loads(content)
    except (TypeError, json.JSONDecodeError) as e:
        raise ExtractionMalformed(f"Extraction response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ExtractionMalformed("Extraction response is not a JSON object")
    try:
        analysis = CallAnalysis.model_validate(data)
    except ValidationError as e:
        raise ExtractionMalformed(
            f"Extraction response does not match the expected shape: {e.error_count()} error(s)"
        ) from e
    log.info(
        "extraction_parsed",
        key_points=len(analysis.key_points),
        action_items=len(analysis.action_items),
        loan_fields=sorted(analysis.loan_info.to_json_dict()),
    )
    return analysis
