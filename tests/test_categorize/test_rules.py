"""Tests for the rule-based categorizer."""

import asyncio
import copy
import math

import pytest

from src.categorize.chart import StaticChartSource, YamlChartSource
from src.categorize.rules import DEFAULT_RULE_CONFIDENCE, RuleCategorizer
from src.config import Config
from tests.conftest import FIXTURE_CONFIG_DIR


@pytest.fixture
def config():
    return Config(FIXTURE_CONFIG_DIR)


@pytest.fixture
def chart(config):
    return asyncio.run(YamlChartSource(config).get_full_chart_of_accounts())


@pytest.fixture
def rules(config):
    return RuleCategorizer(config.rules)


class TestKeywordRules:
    def test_contains_case_insensitive(self, rules, chart):
        assert rules.match("whole foods market #12", -45.0, chart) == "231"

    def test_named_confidence(self, rules, chart):
        m = rules.match_rule("ACME PAYROLL", 2500.0, chart)
        assert m.account_code == "111"
        assert m.confidence == 0.90
        assert m.rule == "keyword"

    def test_numeric_confidence(self, rules, chart):
        assert rules.match_rule("WHOLE FOODS", -1.0, chart).confidence == 0.85

    def test_default_confidence(self, rules, chart):
        assert rules.match_rule("STARBUCKS 1234", -5.0, chart).confidence == DEFAULT_RULE_CONFIDENCE

    def test_regex_rule(self, rules, chart):
        m = rules.match_rule("SQ *TACO TRUCK", -12.0, chart)
        assert m.account_code == "272"
        assert m.confidence == 0.55

    def test_code_missing_from_chart_is_skipped(self, rules, chart):
        assert rules.match("GHOST MERCHANT LLC", -10.0, chart) is None

    def test_no_match(self, rules, chart):
        assert rules.match("RANDOM VENDOR", -10.0, chart) is None

    def test_empty_description(self, rules, chart):
        assert rules.match("", -10.0, chart) is None

    def test_exact_match(self, chart):
        r = RuleCategorizer({"keyword_rules": [
            {"pattern": "Starbucks", "match": "exact", "account_code": "273"},
        ]})
        assert r.match("STARBUCKS", -1.0, chart) == "273"
        assert r.match("STARBUCKS 123", -1.0, chart) is None

    def test_first_rule_wins(self, chart):
        r = RuleCategorizer({"keyword_rules": [
            {"pattern": "COFFEE", "account_code": "273"},
            {"pattern": "COFFEE", "account_code": "272"},
        ]})
        assert r.match("BLUE BOTTLE COFFEE", -4.0, chart) == "273"


class TestAmountRules:
    def test_small_amount_band(self, rules, chart):
        m = rules.match_rule("COSTCO GAS #123", -45.0, chart)
        assert m.account_code == "241"
        assert m.rule == "amount"
        assert m.note

    def test_large_amount_band(self, rules, chart):
        assert rules.match("COSTCO WHSE", -210.0, chart) == "231"

    def test_nan_amount_skips_amount_rules(self, rules, chart):
        assert rules.match("COSTCO WHSE", math.nan, chart) is None

    def test_amount_rules_checked_first(self, chart):
        r = RuleCategorizer({
            "keyword_rules": [{"pattern": "COSTCO", "account_code": "231"}],
            "amount_rules": [{"merchant_pattern": "COSTCO", "rules": [
                {"amount_range": [0, 50], "account_code": "241"},
            ]}],
        })
        assert r.match("COSTCO", -20.0, chart) == "241"
        assert r.match("COSTCO", -80.0, chart) == "231"


class TestCompilation:
    def test_empty(self):
        assert RuleCategorizer(None).is_empty
        assert RuleCategorizer({}).is_empty

    def test_invalid_entries_ignored(self):
        chart = asyncio.run(StaticChartSource().get_full_chart_of_accounts())
        r = RuleCategorizer({"keyword_rules": [
            {"pattern": "", "account_code": "231"},
            {"pattern": "X"},
            {"pattern": "[unclosed", "match": "regex", "account_code": "231"},
            {"pattern": "Y", "match": "fuzzy", "account_code": "231"},
        ]})
        assert r.is_empty
        assert r.match("X Y [unclosed", -1.0, chart) is None

    def test_confidence_clamped(self):
        chart = asyncio.run(StaticChartSource().get_full_chart_of_accounts())
        r = RuleCategorizer({"keyword_rules": [
            {"pattern": "A", "account_code": "231", "confidence": 7},
        ]})
        assert r.match_rule("A", -1.0, chart).confidence == 1.0

    def test_non_numeric_amount_range_skipped(self):
        chart = asyncio.run(StaticChartSource().get_full_chart_of_accounts())
        r = RuleCategorizer({"amount_rules": [{"merchant_pattern": "COSTCO", "rules": [
            {"amount_range": ["cheap", 50], "account_code": "231"},
            {"amount_range": [None, 50], "account_code": "231"},
            {"amount_range": [50, 500], "account_code": "232"},
        ]}]})
        assert r.match("COSTCO", -20.0, chart) is None
        assert r.match("COSTCO", -80.0, chart) == "232"


class TestRepeatability:
    @pytest.mark.parametrize("description,amount", [
        ("ACME PAYROLL", 2500.0),
        ("SQ *TACO TRUCK", -12.0),
        ("COSTCO GAS #123", -45.0),
        ("COSTCO WHSE", -210.0),
        ("RANDOM VENDOR", -10.0),
    ])
    def test_same_input_same_result(self, rules, chart, description, amount):
        before = copy.deepcopy(chart)
        first = rules.match_rule(description, amount, chart)
        second = rules.match_rule(description, amount, chart)
        assert first == second
        assert rules.match(description, amount, chart) == rules.match(description, amount, chart)
        assert chart == before
