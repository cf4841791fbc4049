"""Tests for the chart-of-accounts registry."""

import asyncio

from src.categorize.chart import (
    UNCATEGORIZED_CODE,
    AccountCategory,
    StaticChartSource,
    YamlChartSource,
    build_chart,
    chart_excerpt,
    get_account_by_code,
    validate_account_code,
)
from src.config import Config
from tests.conftest import FIXTURE_CONFIG_DIR


def _static_chart():
    return asyncio.run(StaticChartSource().get_full_chart_of_accounts())


class TestStaticChart:
    def test_ten_entries(self):
        chart = _static_chart()
        assert list(chart) == [
            "111", "112", "113", "114", "231", "232", "272", "311", "312", "421",
        ]

    def test_entry_fields(self):
        entry = _static_chart()["113"]
        assert entry == AccountCategory(
            "113", "Income", "Reimbursements", "Salary",
            "Medical, travel, phone, health etc",
        )

    def test_fresh_mapping_each_call(self):
        source = StaticChartSource()
        first = asyncio.run(source.get_full_chart_of_accounts())
        first.pop("111")
        second = asyncio.run(source.get_full_chart_of_accounts())
        assert "111" in second


class TestYamlChart:
    def test_loads_fixture_chart(self):
        chart = asyncio.run(YamlChartSource(Config(FIXTURE_CONFIG_DIR)).get_full_chart_of_accounts())
        assert UNCATEGORIZED_CODE in chart
        assert chart["231"].account == "Groceries and Food"
        assert chart["231"].parent_account == "Daily Living"

    def test_incomplete_entry_skipped(self):
        chart = asyncio.run(YamlChartSource(Config(FIXTURE_CONFIG_DIR)).get_full_chart_of_accounts())
        assert "999" not in chart


class TestBuildChart:
    def test_codes_become_strings(self):
        chart = build_chart({111: {"account_type": "Income", "account": "Salary"}})
        assert "111" in chart
        assert chart["111"].code == "111"

    def test_blank_optional_fields_are_none(self):
        chart = build_chart({
            "1": {"account_type": "Expense", "account": "X", "parent_account": "", "description": ""},
        })
        assert chart["1"].parent_account is None
        assert chart["1"].description is None


class TestLookups:
    def test_validate_account_code(self):
        chart = _static_chart()
        assert validate_account_code("231", chart)
        assert not validate_account_code("999", chart)
        assert not validate_account_code("", chart)
        assert not validate_account_code(None, chart)

    def test_get_account_by_code(self):
        chart = _static_chart()
        assert get_account_by_code("272", chart).account == "Dining out"
        assert get_account_by_code("nope", chart) is None


class TestExcerpt:
    def test_shape(self):
        excerpt = chart_excerpt(_static_chart(), limit=2)
        assert excerpt == [
            {"code": "111", "accountType": "Income", "parentAccount": "Salary",
             "account": "Base Salary", "description": ""},
            {"code": "112", "accountType": "Income", "parentAccount": "Salary",
             "account": "Bonus and commissions", "description": ""},
        ]

    def test_limit_larger_than_chart(self):
        assert len(chart_excerpt(_static_chart(), limit=30)) == 10

    def test_empty_chart(self):
        assert chart_excerpt({}, limit=5) == []
