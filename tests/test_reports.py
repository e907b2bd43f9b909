"""
Tests for derived reports

Balances, the net-worth trend, investment worth history, tag breakdown
and summary are all recomputed from the ledger, so each test builds a
small ledger and checks the derived figures. Dates are pinned with an
explicit today.
"""

import pytest
from datetime import date
from decimal import Decimal

from budget_manager.database import NotFoundError, ValidationError
from budget_manager.reports import ReportGenerator, WorthSnapshots

TODAY = date(2024, 3, 20)


def add(db, account, transaction_type, amount, day, status='cleared', **extra):
    data = {
        'type': transaction_type,
        'amount': amount,
        'date': day,
        'account_id': account['id'],
        'status': status,
    }
    data.update(extra)
    return db.add_transaction(data)


@pytest.fixture
def portfolio(db):
    """Investment account holding 2 BTC."""
    investment = db.add_investment_account("Broker", "USD")
    asset = db.add_asset(investment['id'], {'api_source': 'fake', 'asset_id': 'BTC', 'symbol': 'btc', 'amount': '2'})
    return investment, asset


class TestBalances:
    """Tests for account balances."""

    def test_balance_is_sum_of_amounts(self, db, reports, checking):
        add(db, checking, 'income', '1000', '2024-03-05')
        add(db, checking, 'expense', '200', '2024-03-06', status='pending')

        assert reports.compute_account_balance(checking['id']) == Decimal("800")
        assert reports.compute_account_balance(checking['id'], cleared_only=True) == Decimal("1000")

    def test_balance_is_repeatable(self, db, reports, checking):
        add(db, checking, 'income', '12.34', '2024-03-05')
        first = reports.compute_account_balance(checking['id'])
        assert reports.compute_account_balance(checking['id']) == first

    def test_transfer_moves_balance(self, db, reports, checking, savings):
        db.add_transaction({
            'type': 'transfer', 'amount': '100', 'date': '2024-03-05',
            'from_account_id': checking['id'], 'to_account_id': savings['id'],
        })
        assert reports.compute_account_balance(checking['id']) == Decimal("-100")
        assert reports.compute_account_balance(savings['id']) == Decimal("100")

    def test_investment_balance_uses_latest_price(self, db, reports, portfolio):
        investment, asset = portfolio
        db.record_asset_price(asset['id'], Decimal("100"), "2024-03-01", "USD")
        db.record_asset_price(asset['id'], Decimal("150"), "2024-03-10", "USD")

        balance = reports.compute_investment_account_balance(investment['account_id'], today=TODAY)

        assert balance == Decimal("300")

    def test_unpriced_investment_is_zero(self, reports, portfolio):
        investment, _ = portfolio
        assert reports.compute_investment_account_balance(investment['account_id'], today=TODAY) == 0

    def test_accounts_with_balances(self, db, reports, checking, savings):
        add(db, checking, 'income', '50', '2024-03-05')
        balances = {a['name']: a['balance'] for a in reports.get_accounts_with_balances()}
        assert balances == {"Checking": Decimal("50"), "Savings": Decimal("0")}


class TestNetWorthTrend:
    """Tests for the 12 month net-worth trend."""

    def test_month_ends(self):
        ends = ReportGenerator.month_ends(TODAY)
        assert len(ends) == 12
        assert ends[0] == date(2023, 4, 30)
        assert ends[-2] == date(2024, 2, 29)
        assert ends[-1] == date(2024, 3, 31)

    def test_income_minus_expense(self, db, reports, checking):
        add(db, checking, 'income', '1000', '2024-03-05')
        add(db, checking, 'expense', '200', '2024-03-06')

        trend = reports.compute_net_worth_trend(today=TODAY)

        assert len(trend) == 12
        assert trend[0]['label'] == "Apr '23"
        assert trend[-1] == {'label': "Mar '24", 'value': Decimal("800")}
        assert trend[-2]['value'] == 0

    def test_pending_rows_excluded(self, db, reports, checking):
        add(db, checking, 'income', '1000', '2024-03-05', status='pending')
        assert reports.compute_net_worth_trend(today=TODAY)[-1]['value'] == 0

    def test_internal_transfer_is_neutral(self, db, reports, checking, savings):
        add(db, checking, 'income', '500', '2024-02-01')
        db.add_transaction({
            'type': 'transfer', 'amount': '100', 'date': '2024-03-05', 'status': 'cleared',
            'from_account_id': checking['id'], 'to_account_id': savings['id'],
        })
        trend = reports.compute_net_worth_trend(today=TODAY)
        assert trend[-2]['value'] == Decimal("500")
        assert trend[-1]['value'] == Decimal("500")

    def test_row_on_last_day_of_month_counts(self, db, reports, checking):
        add(db, checking, 'income', '10', '2024-02-29T23:30:00Z')
        assert reports.compute_net_worth_trend(today=TODAY)[-2]['value'] == Decimal("10")

    def test_investment_snapshots_add_to_trend(self, db, reports, portfolio):
        _, asset = portfolio
        db.record_asset_price(asset['id'], Decimal("50"), "2024-02-10", "USD")

        trend = reports.compute_net_worth_trend(today=TODAY)

        assert trend[-3]['value'] == 0
        assert trend[-2]['value'] == Decimal("100")
        assert trend[-1]['value'] == Decimal("100")


class TestWorthHistory:
    """Tests for investment account worth history."""

    def test_daily_points(self, db, reports, portfolio):
        investment, asset = portfolio
        db.record_asset_price(asset['id'], Decimal("100"), "2024-03-10", "USD")

        history = reports.compute_worth_history(investment['id'], "30d", today=TODAY)

        assert len(history) == 30
        assert history[0]['date'] == "2024-02-20"
        assert history[-1]['date'] == "2024-03-20"
        by_date = {point['date']: point['value'] for point in history}
        assert by_date["2024-03-09"] == 0
        assert by_date["2024-03-10"] == Decimal("200")

    def test_monthly_points(self, db, reports, portfolio):
        investment, asset = portfolio
        db.record_asset_price(asset['id'], Decimal("100"), "2024-02-10", "USD")

        history = reports.compute_worth_history(investment['id'], "12m", today=TODAY)

        assert [p['date'] for p in history][:2] == ["2023-04-01", "2023-05-01"]
        assert history[-1] == {'date': "2024-03-01", 'value': Decimal("200")}
        assert history[-2]['value'] == 0

    def test_account_without_assets(self, db, reports):
        investment = db.add_investment_account("Empty")
        assert reports.compute_worth_history(investment['id'], today=TODAY) == []

    def test_unknown_timeframe(self, reports, portfolio):
        investment, _ = portfolio
        with pytest.raises(ValidationError):
            reports.compute_worth_history(investment['id'], "7d")

    def test_unknown_account(self, reports):
        with pytest.raises(NotFoundError):
            reports.compute_worth_history(31)

    def test_snapshot_lookup(self):
        snapshots = WorthSnapshots([
            {'asset_id': 1, 'date': "2024-01-01", 'amount': Decimal("1"), 'price': Decimal("10")},
            {'asset_id': 1, 'date': "2024-02-01", 'amount': Decimal("1"), 'price': Decimal("20")},
        ])
        assert snapshots.latest(1, date(2023, 12, 31)) is None
        assert snapshots.latest(1, date(2024, 1, 15))['price'] == Decimal("10")
        assert snapshots.latest(1, date(2024, 2, 1))['price'] == Decimal("20")
        assert snapshots.latest(2, date(2024, 2, 1)) is None


class TestSpendingReports:
    """Tests for tag breakdown and summary."""

    def test_tag_breakdown_groups_by_root(self, db, reports, checking, food_tags):
        add(db, checking, 'expense', '30', '2024-03-05', tags=[food_tags['organic']['id']])
        add(db, checking, 'expense', '10', '2024-03-06', tags=[food_tags['travel']['id']])
        add(db, checking, 'expense', '10', '2024-03-07')
        add(db, checking, 'expense', '99', '2024-03-07', status='pending')

        breakdown = reports.tag_breakdown()

        assert breakdown[0] == {
            'name': "Food", 'value': Decimal("30"), 'percentage': Decimal("60.00"), 'color': "#ef4444",
        }
        rest = {item['name']: item for item in breakdown[1:]}
        assert set(rest) == {"Travel", "Uncategorized"}
        assert rest["Uncategorized"]['color'] == "#8884d8"
        assert rest["Travel"]['percentage'] == Decimal("20.00")

    def test_tag_breakdown_empty(self, reports):
        assert reports.tag_breakdown() == []

    def test_summary(self, db, reports, checking, savings):
        add(db, checking, 'income', '1000', '2024-03-05')
        add(db, checking, 'expense', '200', '2024-03-05')
        db.add_transaction({
            'type': 'transfer', 'amount': '100', 'date': '2024-03-05', 'status': 'cleared',
            'from_account_id': checking['id'], 'to_account_id': savings['id'],
        })
        add(db, checking, 'income', '5', '2024-03-06')

        result = reports.summary(start_date="2024-03-01", end_date="2024-03-05")

        assert result['total_income'] == Decimal("1000")
        assert result['total_expenses'] == Decimal("200")
        assert result['net'] == Decimal("800")
        assert result['transaction_count'] == 4
        assert result['total_balance'] == Decimal("805")

    def test_summary_for_one_account(self, db, reports, checking, savings):
        add(db, savings, 'income', '70', '2024-03-05')
        result = reports.summary(account_id=savings['id'])
        assert result['total_balance'] == Decimal("70")
        assert result['total_income'] == Decimal("70")

    def test_summary_rejects_reversed_range(self, reports):
        with pytest.raises(ValidationError):
            reports.summary(start_date="2024-03-10", end_date="2024-03-01")
