"""Derived queries and reports over the published collections.

Transaction reports work on a :class:`pandas.DataFrame` built by :func:`transactions_frame`.
Budget and goal helpers take the published records directly.

Amounts are converted to floats when building frames, like any other pandas report. The
dashboard aggregates kept by the state containers stay in :class:`~decimal.Decimal`.
"""
import datetime
import enum
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import pandas as pd
from dateutil.relativedelta import relativedelta

from .models import TransactionType
from ..core.records import Record, now_utc, to_decimal

TRANSACTION_COLUMNS: List[str] = ['id', 'timestamp', 'amount', 'type', 'category', 'description']
USAGE_COLUMNS: List[str] = ['id', 'category', 'limit', 'spent', 'remaining', 'percentage', 'exceeded']


class Period(enum.StrEnum):
    Today = 'today'
    Week = 'week'
    Month = 'month'


def _utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def transactions_frame(records: Iterable[Record]) -> pd.DataFrame:
    """Convert transaction records to a DataFrame.

    Timestamps are converted to UTC, missing amounts become 0 and missing strings become ''.

    Args:
        records: Transaction records.

    Returns:
        pd.DataFrame: Frame with the columns of :data:`TRANSACTION_COLUMNS`.
    """
    rows = [
        {
            'id': r.id,
            'timestamp': _utc(r.timestamp),
            'amount': float(to_decimal(r.get('amount'))),
            'type': r.get('type') or '',
            'category': r.get('category') or '',
            'description': r.get('description') or '',
        }
        for r in records
    ]
    if not rows:
        df = pd.DataFrame(columns=TRANSACTION_COLUMNS)
        df['amount'] = df['amount'].astype(float)
        df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)
        return df

    df = pd.DataFrame(rows, columns=TRANSACTION_COLUMNS)
    df['timestamp'] = pd.to_datetime(df['timestamp'], utc=True)
    return df


def filter_by_date_range(df: pd.DataFrame, start: datetime.datetime, end: datetime.datetime) -> pd.DataFrame:
    """Return the rows with ``start <= timestamp <= end``."""
    if df.empty:
        return df
    mask = (df['timestamp'] >= pd.Timestamp(_utc(start))) & (df['timestamp'] <= pd.Timestamp(_utc(end)))
    return df[mask]


def total_income(df: pd.DataFrame) -> float:
    return float(df.loc[df['type'] == TransactionType.Income, 'amount'].sum())


def total_expenses(df: pd.DataFrame) -> float:
    return float(df.loc[df['type'] == TransactionType.Expense, 'amount'].sum())


def category_spending(df: pd.DataFrame) -> pd.Series:
    """Return the expenses summed per category, largest first."""
    expenses = df[df['type'] == TransactionType.Expense]
    if expenses.empty:
        return pd.Series(dtype=float, name='amount')
    return expenses.groupby('category')['amount'].sum().sort_values(ascending=False)


def period_start(period: str, now: Optional[datetime.datetime] = None) -> datetime.datetime:
    """Return the first instant of the current day, week (Monday) or month."""
    now = _utc(now or now_utc())
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    period = Period(period)
    if period == Period.Today:
        return midnight
    if period == Period.Week:
        return midnight - datetime.timedelta(days=midnight.weekday())
    return midnight.replace(day=1)


def period_summary(df: pd.DataFrame, period: str, now: Optional[datetime.datetime] = None) -> Dict[str, float]:
    """Summarize the transactions of the current day, week or month.

    Returns:
        dict: ``income``, ``expenses``, ``balance`` and ``count``.
    """
    now = _utc(now or now_utc())
    df = filter_by_date_range(df, period_start(period, now), now)
    income = total_income(df)
    expenses = total_expenses(df)
    return {
        'income': income,
        'expenses': expenses,
        'balance': income - expenses,
        'count': len(df),
    }


def monthly_totals(df: pd.DataFrame, months: int = 6, now: Optional[datetime.datetime] = None) -> pd.DataFrame:
    """Income and expenses of the last ``months`` calendar months, oldest first.

    Months without transactions are included with zero totals.

    Returns:
        pd.DataFrame: Indexed by ``YYYY-MM`` with ``income`` and ``expenses`` columns.
    """
    now = _utc(now or now_utc())
    first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    index = [(first - relativedelta(months=i)).strftime('%Y-%m') for i in reversed(range(max(months, 1)))]

    out = pd.DataFrame(0.0, index=index, columns=['income', 'expenses'])
    out.index.name = 'month'
    if df.empty:
        return out

    keys = df['timestamp'].dt.strftime('%Y-%m')
    for column, kind in (('income', TransactionType.Income), ('expenses', TransactionType.Expense)):
        sums = df[df['type'] == kind].groupby(keys)['amount'].sum()
        for month, value in sums.items():
            if month in out.index:
                out.loc[month, column] = float(value)
    return out


def spending_for_month(df: pd.DataFrame, year: int, month: int) -> pd.Series:
    """Return the expenses of one calendar month summed per category."""
    if df.empty:
        return category_spending(df)
    start = datetime.datetime(year, month, 1, tzinfo=datetime.timezone.utc)
    end = start + relativedelta(months=1) - datetime.timedelta(microseconds=1)
    return category_spending(filter_by_date_range(df, start, end))


def budgets_for_month(budgets: Iterable[Record], year: int, month: int) -> List[Record]:
    return [b for b in budgets if b.get('year') == year and b.get('month') == month]


def budget_by_category(budgets: Iterable[Record], year: int, month: int) -> Dict[str, Record]:
    """Return the budgets of a month keyed by category.

    If a category has several budgets in the same month the last one wins.
    """
    out = {}
    for budget in budgets_for_month(budgets, year, month):
        category = budget.get('category')
        if category in out:
            logging.warning(f'Multiple budgets for "{category}" in {year}-{month:02d}.')
        out[category] = budget
    return out


def total_budget(budgets: Iterable[Record], year: int, month: int) -> Decimal:
    return sum((to_decimal(b.get('monthly_limit')) for b in budgets_for_month(budgets, year, month)), Decimal(0))


def budget_usage(budgets: Iterable[Record], df: pd.DataFrame, year: int, month: int) -> pd.DataFrame:
    """Compare every budget of a month with the spending in its category.

    Returns:
        pd.DataFrame: One row per budget with the columns of :data:`USAGE_COLUMNS`.
            ``percentage`` is in percent and not clamped, 0 when the limit is 0.
    """
    items = budgets_for_month(budgets, year, month)
    if not items:
        return pd.DataFrame(columns=USAGE_COLUMNS)

    spending = spending_for_month(df, year, month)
    rows = []
    for budget in items:
        limit = float(to_decimal(budget.get('monthly_limit')))
        spent = float(spending.get(budget.get('category'), 0.0))
        rows.append({
            'id': budget.id,
            'category': budget.get('category'),
            'limit': limit,
            'spent': spent,
            'remaining': limit - spent,
            'percentage': spent / limit * 100 if limit > 0 else 0.0,
            'exceeded': spent > limit,
        })
    return pd.DataFrame(rows, columns=USAGE_COLUMNS)


def goal_progress(goal: Record) -> float:
    """Return the progress of a goal as a percentage clamped to 0-100."""
    target = to_decimal(goal.get('target_amount'))
    if target <= 0:
        return 0.0
    progress = to_decimal(goal.get('current_amount')) / target * 100
    return float(min(max(progress, Decimal(0)), Decimal(100)))


def is_completed(goal: Record) -> bool:
    return to_decimal(goal.get('current_amount')) >= to_decimal(goal.get('target_amount'))


def active_goals(goals: Iterable[Record]) -> List[Record]:
    return [g for g in goals if not is_completed(g)]


def completed_goals(goals: Iterable[Record]) -> List[Record]:
    return [g for g in goals if is_completed(g)]


def total_target(goals: Iterable[Record]) -> Decimal:
    return sum((to_decimal(g.get('target_amount')) for g in goals), Decimal(0))


def total_current(goals: Iterable[Record]) -> Decimal:
    return sum((to_decimal(g.get('current_amount')) for g in goals), Decimal(0))


def total_progress(goals: Iterable[Record]) -> float:
    """Return the combined progress of all goals, clamped to 0-100."""
    goals = list(goals)
    target = total_target(goals)
    if target <= 0:
        return 0.0
    progress = total_current(goals) / target * 100
    return float(min(max(progress, Decimal(0)), Decimal(100)))
