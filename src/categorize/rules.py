"""Rule-based categorization: deterministic description/amount matching.

Two kinds of rules, both loaded from rules.yaml:
  - amount rules: disambiguate a merchant by the transaction amount
    (e.g. a warehouse store is groceries under $200, household above)
  - keyword rules: contains / exact / regex match on the description

Amount rules are checked first since they are narrower. A rule whose
account code is missing from the chart in use is skipped, so the result
is always a valid code for that chart or None.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass

from src.categorize.chart import ChartOfAccounts

logger = logging.getLogger(__name__)

DEFAULT_RULE_CONFIDENCE = 0.7

_CONFIDENCE_MAP = {
    "high": 0.90,
    "medium": 0.75,
    "low": 0.55,
}


@dataclass(frozen=True)
class RuleMatch:
    """Result of a rule match."""
    account_code: str
    confidence: float
    rule: str  # "keyword" or "amount"
    note: str | None = None


@dataclass(frozen=True)
class _KeywordRule:
    pattern: str
    match_type: str
    account_code: str
    confidence: float
    note: str | None
    regex: re.Pattern | None = None

    def matches(self, desc_upper: str, description: str) -> bool:
        if self.match_type == "exact":
            return desc_upper == self.pattern
        if self.match_type == "regex":
            return self.regex is not None and self.regex.search(description) is not None
        return self.pattern in desc_upper


@dataclass(frozen=True)
class _AmountRange:
    low: float
    high: float
    account_code: str
    confidence: float
    note: str | None


@dataclass(frozen=True)
class _AmountRuleSet:
    merchant_pattern: str
    ranges: tuple[_AmountRange, ...]


def _resolve_confidence(value) -> float:
    if value is None:
        return DEFAULT_RULE_CONFIDENCE
    if isinstance(value, str):
        return _CONFIDENCE_MAP.get(value.lower(), DEFAULT_RULE_CONFIDENCE)
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return DEFAULT_RULE_CONFIDENCE
    if math.isnan(conf):
        return DEFAULT_RULE_CONFIDENCE
    return max(0.0, min(1.0, conf))


class RuleCategorizer:
    """Compiled rule set. Matching is pure and holds no per-call state.

    Args:
        rules: The rules.yaml mapping (keys ``keyword_rules`` and
            ``amount_rules``). None or empty means no rules, in which case
            every lookup returns None.
    """

    def __init__(self, rules: dict | None = None):
        rules = rules or {}
        self._keyword_rules = tuple(self._compile_keyword_rules(rules.get("keyword_rules") or []))
        self._amount_rules = tuple(self._compile_amount_rules(rules.get("amount_rules") or []))

    @property
    def is_empty(self) -> bool:
        return not self._keyword_rules and not self._amount_rules

    def match(
        self,
        description: str,
        amount: float,
        chart: ChartOfAccounts,
    ) -> str | None:
        """Return the matching account code, or None."""
        result = self.match_rule(description, amount, chart)
        return result.account_code if result is not None else None

    def match_rule(
        self,
        description: str,
        amount: float,
        chart: ChartOfAccounts,
    ) -> RuleMatch | None:
        """Return the first matching rule with its confidence, or None."""
        if not description:
            return None
        desc_upper = description.upper()

        amount_match = self._match_amount(desc_upper, amount, chart)
        if amount_match is not None:
            return amount_match
        return self._match_keyword(desc_upper, description, chart)

    # ── Matching ──────────────────────────────────────────

    def _match_amount(
        self, desc_upper: str, amount: float, chart: ChartOfAccounts
    ) -> RuleMatch | None:
        if amount is None or (isinstance(amount, float) and math.isnan(amount)):
            return None
        value = abs(amount)
        for rule_set in self._amount_rules:
            if rule_set.merchant_pattern not in desc_upper:
                continue
            for rng in rule_set.ranges:
                if not (rng.low <= value <= rng.high):
                    continue
                if rng.account_code not in chart:
                    continue
                return RuleMatch(
                    account_code=rng.account_code,
                    confidence=rng.confidence,
                    rule="amount",
                    note=rng.note,
                )
        return None

    def _match_keyword(
        self, desc_upper: str, description: str, chart: ChartOfAccounts
    ) -> RuleMatch | None:
        for rule in self._keyword_rules:
            if not rule.matches(desc_upper, description):
                continue
            if rule.account_code not in chart:
                continue
            return RuleMatch(
                account_code=rule.account_code,
                confidence=rule.confidence,
                rule="keyword",
                note=rule.note,
            )
        return None

    # ── Compilation ───────────────────────────────────────

    @staticmethod
    def _compile_keyword_rules(raw_rules: list[dict]) -> list[_KeywordRule]:
        compiled: list[_KeywordRule] = []
        for rule in raw_rules:
            pattern = str(rule.get("pattern", "") or "")
            account_code = rule.get("account_code")
            # Empty patterns would match everything
            if not pattern:
                logger.warning("Keyword rule with empty pattern ignored: %s", rule)
                continue
            if account_code is None or account_code == "":
                logger.warning(
                    "Keyword rule missing account_code for pattern '%s'", pattern
                )
                continue

            match_type = rule.get("match", "contains")
            regex = None
            if match_type == "regex":
                try:
                    regex = re.compile(pattern, re.IGNORECASE)
                except re.error as e:
                    logger.warning("Invalid regex rule '%s': %s", pattern, e)
                    continue
            elif match_type not in ("contains", "exact"):
                logger.warning(
                    "Unknown match type '%s' for pattern '%s'", match_type, pattern
                )
                continue

            compiled.append(_KeywordRule(
                pattern=pattern.upper(),
                match_type=match_type,
                account_code=str(account_code),
                confidence=_resolve_confidence(rule.get("confidence")),
                note=rule.get("note"),
                regex=regex,
            ))
        return compiled

    @staticmethod
    def _compile_amount_rules(raw_rules: list[dict]) -> list[_AmountRuleSet]:
        compiled: list[_AmountRuleSet] = []
        for rule_set in raw_rules:
            pattern = str(rule_set.get("merchant_pattern", "") or "")
            if not pattern:
                continue
            ranges: list[_AmountRange] = []
            for rule in rule_set.get("rules", []) or []:
                bounds = rule.get("amount_range")
                account_code = rule.get("account_code")
                if not bounds or len(bounds) != 2 or not account_code:
                    logger.warning(
                        "Amount rule for '%s' needs amount_range and account_code", pattern
                    )
                    continue
                try:
                    lo, hi = float(bounds[0]), float(bounds[1])
                except (TypeError, ValueError):
                    logger.warning(
                        "Amount rule for '%s' has non-numeric amount_range: %s",
                        pattern, bounds,
                    )
                    continue
                ranges.append(_AmountRange(
                    low=min(lo, hi),
                    high=max(lo, hi),
                    account_code=str(account_code),
                    confidence=_resolve_confidence(rule.get("confidence")),
                    note=rule.get("note"),
                ))
            if ranges:
                compiled.append(_AmountRuleSet(pattern.upper(), tuple(ranges)))
        return compiled
