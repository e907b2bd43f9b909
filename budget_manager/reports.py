"""
Budget Manager - Reporting Module
Derived balances, net-worth trend, investment worth history and spending rollups.

Nothing here is stored: every figure is recomputed from the ledger and the
worth snapshots on each call.
"""
import logging
from bisect import bisect_right
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Any, Optional

from dateutil.relativedelta import relativedelta

from .database import BudgetDatabase, NotFoundError, ValidationError
from .utils import to_timestamp
from .validators import validate_date_range

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
UNCATEGORIZED = "Uncategorized"
UNCATEGORIZED_COLOR = "#8884d8"
WORTH_TIMEFRAMES = ("30d", "12m")


def _day_end(day: date) -> str:
    """Last representable ledger timestamp of a calendar day."""
    return f"{day.isoformat()}T23:59:59.999Z"


def _net_worth_contribution(row: Dict[str, Any]) -> Decimal:
    amount = row['amount']
    if row['type'] == 'income':
        return amount
    if row['type'] == 'expense':
        return -abs(amount)
    if row['type'] == 'transfer':
        if row['account_id'] == row['from_account_id']:
            return -abs(amount)
        if row['account_id'] == row['to_account_id']:
            return abs(amount)
    return ZERO


class WorthSnapshots:
    """Per-asset snapshot series answering "latest row at or before day"."""

    def __init__(self, rows: List[Dict[str, Any]]):
        self._series: Dict[int, List[Dict[str, Any]]] = {}
        for row in rows:
            self._series.setdefault(row['asset_id'], []).append(row)
        self._dates = {
            asset_id: [row['date'] for row in series]
            for asset_id, series in self._series.items()
        }

    def latest(self, asset_id: int, on_or_before: date) -> Optional[Dict[str, Any]]:
        dates = self._dates.get(asset_id)
        if not dates:
            return None
        index = bisect_right(dates, on_or_before.isoformat())
        if index == 0:
            return None
        return self._series[asset_id][index - 1]


class ReportGenerator:
    """Generate derived financial views over the ledger."""

    def __init__(self, database: BudgetDatabase):
        self.db = database

    # ==================== BALANCES ====================

    def compute_account_balance(self, account_id: int, cleared_only: bool = False) -> Decimal:
        """
        Sum of the account's transaction amounts.

        Every status counts unless cleared_only is set.
        """
        rows = self.db.get_ledger_rows(
            status='cleared' if cleared_only else None,
            account_id=account_id
        )
        return sum((row['amount'] for row in rows), ZERO)

    def compute_investment_account_balance(self, account_id: int,
                                           today: Optional[date] = None) -> Decimal:
        """
        Holdings value of an investment account.

        Each asset contributes its amount times the price of its latest
        worth snapshot; an asset that was never priced contributes 0.
        """
        today = today or date.today()
        investment_account = self.db.get_investment_account_by_account(account_id)
        if not investment_account:
            return ZERO

        assets = investment_account['assets']
        snapshots = WorthSnapshots(self.db.get_worth_history([a['id'] for a in assets]))

        total = ZERO
        for asset in assets:
            snapshot = snapshots.latest(asset['id'], today)
            if snapshot:
                total += asset['amount'] * snapshot['price']
        return total

    def get_account_balance(self, account: Dict[str, Any]) -> Decimal:
        if account['type'] == 'investment':
            return self.compute_investment_account_balance(account['id'])
        return self.compute_account_balance(account['id'])

    def get_accounts_with_balances(self) -> List[Dict[str, Any]]:
        """All accounts, each with a computed 'balance'."""
        accounts = self.db.get_accounts()
        for account in accounts:
            account['balance'] = self.get_account_balance(account)
        return accounts

    # ==================== NET WORTH ====================

    @staticmethod
    def month_ends(today: date, months: int = 12) -> List[date]:
        """Last day of each of the trailing months, oldest first, current month included."""
        first = today.replace(day=1)
        return [
            first - relativedelta(months=offset) + relativedelta(months=1) - timedelta(days=1)
            for offset in range(months - 1, -1, -1)
        ]

    def compute_net_worth_trend(self, today: Optional[date] = None) -> List[Dict[str, Any]]:
        """
        Net worth at each of the trailing 12 month ends.

        value = signed sum of cleared ledger rows dated on or before the month
        end, plus every asset's snapshot amount times price as of that day.
        Transfer legs are signed by role: the from-leg subtracts, the to-leg adds.

        Returns:
            [{'label': "Mar '24", 'value': Decimal}, ...] oldest first
        """
        today = today or date.today()
        rows = self.db.get_ledger_rows(status='cleared')
        snapshots = WorthSnapshots(self.db.get_worth_history())
        asset_ids = [asset['id'] for asset in self.db.get_assets()]

        trend = []
        for month_end in self.month_ends(today):
            cutoff = _day_end(month_end)
            ledger_worth = sum(
                (_net_worth_contribution(row) for row in rows if row['date'] <= cutoff),
                ZERO
            )
            investment_worth = ZERO
            for asset_id in asset_ids:
                snapshot = snapshots.latest(asset_id, month_end)
                if snapshot:
                    investment_worth += snapshot['amount'] * snapshot['price']

            trend.append({
                'label': month_end.strftime("%b '%y"),
                'value': ledger_worth + investment_worth,
            })

        logger.debug(f"Computed net worth trend over {len(rows)} cleared rows")
        return trend

    def compute_worth_history(self, investment_account_id: int, timeframe: str = "30d",
                              today: Optional[date] = None) -> List[Dict[str, Any]]:
        """
        Value of an investment account over time.

        30d gives one point per day for the last 30 days, 12m one point on the
        first of each of the last 12 months. Each asset contributes the amount
        times price of its latest snapshot at or before the point; an asset
        without one contributes its current amount at price 0.

        Raises:
            NotFoundError: Unknown investment account
            ValidationError: Unknown timeframe
        """
        valid_timeframe = timeframe or "30d"
        if valid_timeframe not in WORTH_TIMEFRAMES:
            raise ValidationError(f"Timeframe must be one of: {', '.join(WORTH_TIMEFRAMES)}")

        investment_account = self.db.get_investment_account(investment_account_id)
        if not investment_account:
            raise NotFoundError(f"Investment account {investment_account_id} not found")

        assets = investment_account['assets']
        if not assets:
            return []

        today = today or date.today()
        if valid_timeframe == "12m":
            first = today.replace(day=1) - relativedelta(months=11)
            points = [first + relativedelta(months=i) for i in range(12)]
        else:
            points = [today - timedelta(days=29 - i) for i in range(30)]

        snapshots = WorthSnapshots(self.db.get_worth_history([a['id'] for a in assets]))
        history = []
        for point in points:
            total = ZERO
            for asset in assets:
                snapshot = snapshots.latest(asset['id'], point)
                # Never priced yet: current amount at price 0 adds nothing
                if snapshot:
                    total += snapshot['amount'] * snapshot['price']
            history.append({'date': point.isoformat(), 'value': total})
        return history

    # ==================== SPENDING ====================

    def _period_bounds(self, start_date: Optional[str], end_date: Optional[str]):
        valid, error = validate_date_range(start_date, end_date)
        if not valid:
            raise ValidationError(error)
        try:
            start = to_timestamp(start_date) if start_date else None
            if end_date and len(end_date) == 10:
                end = _day_end(date.fromisoformat(end_date))
            else:
                end = to_timestamp(end_date) if end_date else None
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return start, end

    def tag_breakdown(self, start_date: Optional[str] = None, end_date: Optional[str] = None,
                      account_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Cleared spending grouped by root tag.

        A transaction tagged under several roots counts once for each of
        them. Untagged rows go to "Uncategorized".
        """
        start, end = self._period_bounds(start_date, end_date)
        expenses = [
            t for t in self.db.get_transactions(
                status='cleared', transaction_type='expense', account_id=account_id,
                start_date=start, end_date=end
            )
            if t['amount'] < 0
        ]

        root_of: Dict[int, Dict[str, Any]] = {}

        def walk(node, root):
            root_of[node['id']] = root
            for child in node['children']:
                walk(child, root)

        for root in self.db.build_tag_tree(self.db.get_tags()):
            walk(root, root)

        spending: Dict[str, Decimal] = {}
        colors: Dict[str, str] = {}
        for transaction in expenses:
            amount = abs(transaction['amount'])
            names = set()
            for tag_id in transaction['tags']:
                root = root_of.get(tag_id)
                if root is None:
                    names.add(UNCATEGORIZED)
                else:
                    names.add(root['name'])
                    colors.setdefault(root['name'], root['color'])
            for name in names or {UNCATEGORIZED}:
                spending[name] = spending.get(name, ZERO) + amount

        total = sum(spending.values(), ZERO)
        breakdown = [
            {
                'name': name[:1].upper() + name[1:],
                'value': value,
                'percentage': (value / total * 100).quantize(Decimal("0.01")) if total else ZERO,
                'color': colors.get(name, UNCATEGORIZED_COLOR),
            }
            for name, value in spending.items()
        ]
        breakdown.sort(key=lambda item: item['value'], reverse=True)
        return breakdown

    def summary(self, start_date: Optional[str] = None, end_date: Optional[str] = None,
                account_id: Optional[int] = None) -> Dict[str, Any]:
        """Cleared income and expense totals, transfers excluded, plus total balance."""
        start, end = self._period_bounds(start_date, end_date)
        transactions = self.db.get_transactions(
            status='cleared', account_id=account_id, start_date=start, end_date=end
        )

        total_income = sum(
            (t['amount'] for t in transactions if t['type'] == 'income'), ZERO
        )
        total_expenses = sum(
            (abs(t['amount']) for t in transactions if t['type'] == 'expense'), ZERO
        )

        if account_id is not None:
            account = self.db.get_account(account_id)
            if not account:
                raise NotFoundError(f"Account {account_id} not found")
            total_balance = self.get_account_balance(account)
        else:
            total_balance = sum(
                (a['balance'] for a in self.get_accounts_with_balances()), ZERO
            )

        return {
            'period': {'start_date': start_date, 'end_date': end_date},
            'total_income': total_income,
            'total_expenses': total_expenses,
            'net': total_income - total_expenses,
            'total_balance': total_balance,
            'transaction_count': len(transactions),
        }
