"""LLM fallback classification for transactions the rules could not place.

Sends one transaction plus a bounded chart-of-accounts excerpt to the
completion service and reads back a JSON object with accountCode,
confidence and reasoning. Every failure (provider error, prose without
JSON, bad JSON, unknown code) degrades to the FAILED sentinel; classify()
never raises.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass

from src.categorize.chart import (
    DEFAULT_EXCERPT_LIMIT,
    ChartOfAccounts,
    chart_excerpt,
    validate_account_code,
)
from src.database.models import Transaction
from src.llm.service import LLMRequest, LLMService
from src.telemetry import EventSink

logger = logging.getLogger(__name__)

CLASSIFIER_MODEL = "claude-sonnet-4-20250514"
CLASSIFIER_TEMPERATURE = 0.1
CLASSIFIER_MAX_TOKENS = 500

# Greedy: from the first "{" to the last "}" so nested objects survive.
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class LLMClassification:
    """Result from LLM classification. account_code None means no answer."""
    account_code: str | None
    confidence: float
    reasoning: str | None = None


FAILED = LLMClassification(account_code=None, confidence=0.0)


class ClassificationParseError(ValueError):
    """Reply text did not contain a usable JSON object."""


def clamp_confidence(value) -> float:
    """Coerce a model-supplied confidence into [0, 1]; junk becomes 0.0."""
    if isinstance(value, bool):
        return 0.0
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(conf):
        return 0.0
    return max(0.0, min(1.0, conf))


def build_prompt(txn: Transaction, excerpt: list[dict]) -> str:
    return (
        "You are a financial categorization expert. Given the following transaction:\n"
        f"- Date: {txn.date}\n"
        f"- Description: {txn.description}\n"
        f"- Amount: {txn.amount}\n"
        f"- Type: {txn.type}\n"
        "\n"
        "Please categorize this transaction into the most appropriate account code "
        "from the chart of accounts below.\n"
        "Return a JSON response with the following structure:\n"
        "{\n"
        '  "accountCode": "string",\n'
        '  "confidence": 0.0,\n'
        '  "reasoning": "string"\n'
        "}\n"
        "accountCode must be a code from the chart, confidence is between 0.0 and 1.0, "
        "and reasoning is a one sentence explanation.\n"
        "\n"
        "Chart of Accounts (excerpt):\n"
        f"{json.dumps(excerpt, indent=2)}\n"
    )


def extract_json_object(text: str) -> dict:
    """Return the JSON object embedded in free text.

    Raises:
        ClassificationParseError: No object found, invalid JSON, or the
            JSON is not an object.
    """
    match = _JSON_OBJECT_RE.search(text or "")
    if match is None:
        raise ClassificationParseError("Could not extract JSON from LLM response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ClassificationParseError(f"Failed to parse LLM response: {e}") from e
    if not isinstance(data, dict):
        raise ClassificationParseError("LLM response JSON is not an object")
    return data


def parse_classification(text: str, chart: ChartOfAccounts) -> LLMClassification:
    """Turn reply text into a classification validated against ``chart``.

    Raises ClassificationParseError when no JSON object can be read. A
    readable reply naming a missing or unknown code returns FAILED.
    """
    data = extract_json_object(text)

    code = data.get("accountCode")
    if code is not None and not isinstance(code, str):
        code = str(code)
    if not validate_account_code(code, chart):
        return FAILED

    reasoning = data.get("reasoning")
    return LLMClassification(
        account_code=code,
        confidence=clamp_confidence(data.get("confidence")),
        reasoning=str(reasoning) if reasoning is not None else None,
    )


class LLMClassifier:
    """Classify single transactions through an LLMService.

    Args:
        service: Completion service.
        sink: Event sink for request/failure events.
        model: Fixed model identifier sent with every request.
        excerpt_limit: Max chart entries embedded in the prompt.
    """

    def __init__(
        self,
        service: LLMService,
        sink: EventSink | None = None,
        model: str = CLASSIFIER_MODEL,
        temperature: float = CLASSIFIER_TEMPERATURE,
        max_tokens: int = CLASSIFIER_MAX_TOKENS,
        excerpt_limit: int = DEFAULT_EXCERPT_LIMIT,
    ):
        self.service = service
        self.sink = (sink or EventSink(logger)).bind("llm_classifier")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.excerpt_limit = excerpt_limit

    async def classify(
        self, txn: Transaction, chart: ChartOfAccounts
    ) -> LLMClassification:
        try:
            excerpt = chart_excerpt(chart, self.excerpt_limit)
            request = LLMRequest(
                prompt=build_prompt(txn, excerpt),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                model=self.model,
            )
            self.sink.emit(
                "llm_request",
                transaction_id=txn.id,
                model=self.model,
                chart_entries=len(excerpt),
            )
            response = await self.service.generate_text(request)
            result = parse_classification(response.text, chart)
            if result.account_code is None:
                self.sink.error(
                    "llm_categorization_error",
                    transaction_id=txn.id,
                    error="account code missing or not in chart of accounts",
                )
            return result
        except Exception as e:
            self.sink.error(
                "llm_categorization_error",
                transaction_id=getattr(txn, "id", None),
                error=str(e),
            )
            return FAILED
