"""Tests for the FactPack builder and spending patterns."""

from datetime import date

import pytest

from fincascade.facts.builder import (
    FactPackBuilder,
    compute_spending_patterns,
    convert_records,
    to_goal,
    to_transaction,
)
from fincascade.models.cascade import IntentType
from fincascade.models.facts import (
    SpendingTrend,
    TimeWindow,
    TransactionFact,
    TransactionType,
)


def make_builder(provider, **kwargs) -> FactPackBuilder:
    return FactPackBuilder(provider, today=lambda tz: date(2025, 8, 15), **kwargs)


class TestRecordConversion:
    """Tests for raw record conversion."""

    def test_signed_amount_sets_type(self):
        """Test that the sign of an untyped amount decides income vs expense."""
        expense = to_transaction({"id": "t1", "amount": -12.5, "date": "2025-08-01"})
        income = to_transaction({"id": "t2", "amount": 100, "date": "2025-08-01T09:30:00"})
        assert expense.type == TransactionType.EXPENSE
        assert expense.amount == 12.5
        assert income.type == TransactionType.INCOME
        assert income.occurred_on == date(2025, 8, 1)

    def test_missing_category_defaults(self):
        """Test that a blank category becomes 'uncategorized'."""
        tx = to_transaction({"id": "t1", "amount": -1, "date": "2025-08-01", "category": None})
        assert tx.category == "uncategorized"

    def test_malformed_records_skipped(self):
        """Test that one bad record is left out instead of failing the batch."""
        records = [
            {"id": "t1", "amount": -10, "date": "2025-08-01"},
            {"id": "t_nodate", "amount": -20},
            {"id": "t_badamount", "amount": "lots", "date": "2025-08-02"},
        ]
        facts = convert_records("transaction", records, to_transaction)
        assert [t.id for t in facts] == ["t1"]

    def test_zero_target_goal_skipped(self):
        """Test that a goal with a zero target is skipped."""
        records = [
            {"id": "g_zero", "name": "Someday", "target_amount": 0, "current_amount": 0},
            {"id": "g_car", "name": "Car", "target_amount": 8000, "current_amount": 2000},
        ]
        goals = convert_records("goal", records, lambda r: to_goal(r, date(2025, 8, 15)))
        assert [g.id for g in goals] == ["g_car"]



class TestSpendingPatterns:
    """Tests for compute_spending_patterns."""

    def test_totals_and_projection(self, august_window):
        """Test total, daily average and projection over the window."""
        transactions = [
            TransactionFact(id="a", amount=60.0, category="groceries", occurred_on=date(2025, 8, 2)),
            TransactionFact(id="b", amount=40.0, category="dining", occurred_on=date(2025, 8, 5)),
            TransactionFact(id="c", amount=100.0, category="groceries", occurred_on=date(2025, 8, 12)),
            TransactionFact(
                id="d", amount=3000.0, category="salary",
                occurred_on=date(2025, 8, 1), type=TransactionType.INCOME,
            ),
        ]
        patterns = compute_spending_patterns(transactions, august_window, as_of=date(2025, 8, 10))
        assert patterns.total_spent == 200.0
        assert patterns.average_daily == 20.0
        assert patterns.projected_total == 620.0
        assert patterns.top_categories[0].category == "groceries"
        assert patterns.top_categories[0].total == 160.0
        assert patterns.top_categories[0].percentage == 80

    def test_increasing_trend(self, august_window):
        """Test that heavier spending in the second half is increasing."""
        transactions = [
            TransactionFact(id="a", amount=10.0, occurred_on=date(2025, 8, 1)),
            TransactionFact(id="b", amount=90.0, occurred_on=date(2025, 8, 9)),
        ]
        patterns = compute_spending_patterns(transactions, august_window, as_of=date(2025, 8, 10))
        assert patterns.trend == SpendingTrend.INCREASING

    def test_no_expenses(self, august_window):
        """Test that an empty window is all zeros and stable."""
        patterns = compute_spending_patterns([], august_window, as_of=date(2025, 8, 10))
        assert patterns.total_spent == 0.0
        assert patterns.trend == SpendingTrend.STABLE
        assert patterns.top_categories == ()


class TestFactPackBuilder:
    """Tests for FactPackBuilder."""

    async def test_budget_intent_loads_only_budgets(self, data_provider, august_window):
        """Test that the intent decides which categories are fetched."""
        builder = make_builder(data_provider)
        pack = await builder.build("user-123", IntentType.GET_BUDGET_STATUS, august_window)

        assert data_provider.calls == {"budgets": 1}
        assert pack.balances == ()
        assert pack.spending_patterns is None
        assert [b.id for b in pack.budgets] == ["bud_dining", "bud_groceries", "bud_fuel"]

    async def test_top_n_per_category(self, data_provider, august_window):
        """Test that at most top_n facts are kept per category."""
        builder = make_builder(data_provider, top_n=2)
        pack = await builder.build("user-123", IntentType.GET_BUDGET_STATUS, august_window)
        assert [b.id for b in pack.budgets] == ["bud_dining", "bud_groceries"]

    async def test_transactions_filtered_to_window(self, data_provider, august_window):
        """Test that out-of-window transactions never reach the pack."""
        builder = make_builder(data_provider)
        pack = await builder.build("user-123", IntentType.ANALYZE_SPENDING, august_window)

        ids = {t.id for t in pack.recent_transactions}
        assert "tx_old" not in ids
        assert pack.recent_transactions[0].id == "tx_3"
        assert pack.spending_patterns.total_spent == 200.0

    async def test_inactive_recurring_dropped(self, data_provider, august_window):
        """Test that inactive recurring expenses are skipped."""
        builder = make_builder(data_provider)
        pack = await builder.build("user-123", IntentType.FORECAST_SPEND, august_window)
        assert [r.id for r in pack.recurring] == ["rec_rent"]

    async def test_camel_case_records(self, data_provider, august_window):
        """Test that camelCase fields from the ledger API are accepted."""
        builder = make_builder(data_provider)
        pack = await builder.build("user-123", IntentType.GENERAL_QA, august_window)
        goal = pack.goals[0]
        assert goal.target_amount == 5000.00
        assert goal.current_amount == 1250.00
        assert pack.balances[0].id == "acct_savings"

    async def test_pack_is_reused_within_window(self, data_provider, august_window):
        """Test that the same query shortly after reuses the pack."""
        now = [0.0]
        builder = make_builder(data_provider, reuse_seconds=60, clock=lambda: now[0])

        first = await builder.build("user-123", IntentType.GET_BUDGET_STATUS, august_window)
        now[0] = 30.0
        second = await builder.build("user-123", IntentType.GET_BUDGET_STATUS, august_window)
        now[0] = 120.0
        third = await builder.build("user-123", IntentType.GET_BUDGET_STATUS, august_window)

        assert second is first
        assert third is not first
        assert third.hash == first.hash
        assert data_provider.calls["budgets"] == 2

    async def test_default_window_is_current_month(self, data_provider):
        """Test that the default window is the current month."""
        builder = make_builder(data_provider)
        pack = await builder.build("user-123", IntentType.GET_BALANCE)
        assert pack.time_window == TimeWindow(start=date(2025, 8, 1), end=date(2025, 8, 31), tz="UTC")
        assert pack.verify_hash()

    async def test_malformed_records_do_not_fail_the_build(self, data_provider, august_window):
        """Test that a zero-target goal and an undated transaction are skipped, not fatal."""
        data_provider.records["goals"].append({"id": "goal_zero", "name": "Someday", "targetAmount": 0})
        data_provider.records["transactions"].append({"id": "tx_nodate", "amount": -25.00, "category": "dining"})
        builder = make_builder(data_provider)

        pack = await builder.build("user-123", IntentType.GENERAL_QA, august_window)

        assert [g.id for g in pack.goals] == ["goal_emergency"]
        assert "tx_nodate" not in {t.id for t in pack.recent_transactions}
        assert pack.spending_patterns.total_spent == 200.0
        assert pack.verify_hash()

    def test_rejects_zero_top_n(self, data_provider):

        """Test that top_n must be positive."""
        with pytest.raises(ValueError):
            FactPackBuilder(data_provider, top_n=0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
