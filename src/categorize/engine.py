"""Categorization engine: rules first, LLM fallback second.

Per transaction, in priority order:
1. Short-circuit: already coded with confidence > 0.8 and not updating:
   keep it, record a "system" categorization
2. Rule pass: RuleCategorizer hit, default confidence 0.7
3. LLM fallback: only when the rules found nothing or scored below 0.6,
   and the caller asked for LLM use
4. Fallback: keep the existing code, or "000" (uncategorized)

Each transaction is attempted exactly once. An exception while handling
one transaction counts it as failed and the batch moves on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from src.categorize.chart import UNCATEGORIZED_CODE, ChartOfAccounts, ChartSource
from src.categorize.llm_client import LLMClassifier, clamp_confidence
from src.categorize.rules import RuleCategorizer
from src.database.models import Transaction, TransactionCategorization
from src.database.repository import Repository
from src.telemetry import EventSink

logger = logging.getLogger(__name__)

SHORT_CIRCUIT_CONFIDENCE = 0.8
LLM_FALLBACK_BELOW = 0.6
DEFAULT_CONFIDENCE = 0.5


@dataclass
class CategorizationMetrics:
    confidence_avg: float
    llm_used: bool
    processing_time_ms: float


@dataclass
class CategorizationResult:
    """Outcome of one categorize() call."""
    categorized_transactions: list[Transaction] = field(default_factory=list)
    categorizations: list[TransactionCategorization] = field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0
    metrics: CategorizationMetrics = field(
        default_factory=lambda: CategorizationMetrics(0.0, False, 0.0)
    )


@dataclass
class _Decision:
    account_code: str
    confidence: float
    source: str
    reasoning: str | None = None
    used_llm: bool = False


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CategorizationEngine:
    """Assign account codes to transactions.

    Args:
        rules: Rule categorizer for the deterministic pass.
        chart_source: Where the chart of accounts is loaded from (once per
            categorize() call).
        classifier: LLM classifier for the fallback pass. None disables the
            fallback regardless of ``use_llm``.
        sink: Event sink.
        fallback_code: Code given to transactions nothing could place.
    """

    def __init__(
        self,
        rules: RuleCategorizer,
        chart_source: ChartSource,
        classifier: LLMClassifier | None = None,
        sink: EventSink | None = None,
        fallback_code: str = UNCATEGORIZED_CODE,
    ):
        self.rules = rules
        self.chart_source = chart_source
        self.classifier = classifier
        self.sink = (sink or EventSink(logger)).bind("categorization")
        self.fallback_code = fallback_code

    async def categorize(
        self,
        transactions: Sequence[Transaction],
        use_llm: bool = False,
        update_existing: bool = False,
    ) -> CategorizationResult:
        start = time.monotonic()
        self.sink.emit(
            "categorization_start",
            transaction_count=len(transactions),
            use_llm=use_llm,
        )

        chart = await self.chart_source.get_full_chart_of_accounts()
        result = CategorizationResult()
        confidence_sum = 0.0
        llm_used = False

        for txn in transactions:
            try:
                decision = await self._decide(txn, chart, use_llm, update_existing)
            except Exception as e:
                result.failed_count += 1
                self.sink.error(
                    "categorization_error",
                    transaction_id=getattr(txn, "id", None),
                    error=str(e),
                )
                continue

            if decision.source == "system" and txn.account_code == decision.account_code \
                    and txn.confidence == decision.confidence:
                updated = txn
            else:
                updated = replace(
                    txn,
                    account_code=decision.account_code,
                    confidence=decision.confidence,
                    updated_at=_now(),
                )
            result.categorized_transactions.append(updated)
            result.categorizations.append(TransactionCategorization(
                transaction_id=txn.id,
                category_code=decision.account_code,
                confidence=decision.confidence,
                source=decision.source,
                reasoning=decision.reasoning,
            ))
            result.success_count += 1
            confidence_sum += decision.confidence
            llm_used = llm_used or decision.used_llm

        processing_time_ms = (time.monotonic() - start) * 1000.0
        result.metrics = CategorizationMetrics(
            confidence_avg=(
                confidence_sum / result.success_count if result.success_count else 0.0
            ),
            llm_used=llm_used,
            processing_time_ms=processing_time_ms,
        )
        self.sink.emit(
            "categorization_complete",
            success=result.success_count,
            failed=result.failed_count,
            processing_time_ms=round(processing_time_ms, 2),
        )
        return result

    async def _decide(
        self,
        txn: Transaction,
        chart: ChartOfAccounts,
        use_llm: bool,
        update_existing: bool,
    ) -> _Decision:
        # Step 1: keep confident existing categorizations
        if (
            txn.account_code
            and txn.confidence is not None
            and txn.confidence > SHORT_CIRCUIT_CONFIDENCE
            and not update_existing
        ):
            return _Decision(
                account_code=txn.account_code,
                confidence=clamp_confidence(txn.confidence),
                source="system",
            )

        # Step 2: rule pass
        rule_match = self.rules.match_rule(txn.description, txn.amount, chart)
        decision: _Decision | None = None
        if rule_match is not None:
            decision = _Decision(
                account_code=rule_match.account_code,
                confidence=clamp_confidence(rule_match.confidence),
                source="rule",
                reasoning=rule_match.note,
            )

        # Step 3: LLM fallback
        needs_llm = decision is None or decision.confidence < LLM_FALLBACK_BELOW
        if needs_llm and use_llm and self.classifier is not None:
            llm_result = await self.classifier.classify(txn, chart)
            if llm_result.account_code:
                decision = _Decision(
                    account_code=llm_result.account_code,
                    confidence=clamp_confidence(llm_result.confidence),
                    source="llm",
                    reasoning=llm_result.reasoning,
                    used_llm=True,
                )

        if decision is not None:
            return decision

        # Step 4: nothing matched, keep what the transaction already had
        return _Decision(
            account_code=txn.account_code or self.fallback_code,
            confidence=clamp_confidence(
                txn.confidence if txn.confidence is not None else DEFAULT_CONFIDENCE
            ),
            source="system",
        )


async def apply_categorization_result(
    result: CategorizationResult,
    repo: Repository,
) -> tuple[int, list[str]]:
    """Persist categorized transactions and append their history records.

    Record by record: a failure on one transaction is reported as a
    warning and does not undo the ones already written. Returns
    ``(applied_count, warnings)``.
    """
    applied = 0
    warnings: list[str] = []
    for txn, cat in zip(result.categorized_transactions, result.categorizations):
        try:
            await asyncio.to_thread(repo.record_categorization, cat)
            applied += 1
        except Exception as e:
            logger.warning("Failed to save categorization for %s: %s", txn.id, e)
            warnings.append(f"Failed to save categorization for {txn.id}: {e}")
    return applied, warnings
