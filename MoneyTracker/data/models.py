"""The four entity families of the finance client and their record builders.

Every family is described by a :class:`~MoneyTracker.core.records.FamilySpec`. The default
time-to-live values are overridden by the ``cache`` section of the settings, see
:func:`families`.
"""
import datetime
import enum
from decimal import Decimal
from typing import Dict, List, Optional

from ..core.records import (
    AggregateSpec,
    FamilySpec,
    Record,
    constant_key,
    day_key,
    field_month_key,
    now_utc,
    to_decimal,
)


class TransactionType(enum.StrEnum):
    Income = 'income'
    Expense = 'expense'


class NotificationType(enum.StrEnum):
    BudgetWarning = 'budgetWarning'
    BudgetExceeded = 'budgetExceeded'
    RecurringDue = 'recurringDue'


DEFAULT_ALERT_THRESHOLD: int = 80
DEFAULT_GOAL_COLOR: str = '#10B981'


def _expense_amount(record: Record) -> Decimal:
    if record.get('type') != TransactionType.Expense:
        return Decimal(0)
    return to_decimal(record.get('amount'))


TRANSACTIONS = FamilySpec(
    name='transactions',
    partition_key=day_key,
    ttl=datetime.timedelta(hours=24),
    watched='amount',
    reverse=True,
    field_types={
        'amount': 'decimal',
        'type': 'string',
        'category': 'string',
        'description': 'string',
        'tags': 'list',
        'notes': 'string',
        'currency': 'string',
    },
    aggregate=AggregateSpec(
        sum_a=lambda r: r.get('amount'),
        sum_b=_expense_amount,
    ),
)

BUDGETS = FamilySpec(
    name='budgets',
    partition_key=field_month_key,
    ttl=datetime.timedelta(days=7),
    watched='monthly_limit',
    field_types={
        'category': 'string',
        'monthly_limit': 'decimal',
        'period': 'string',
        'alert_threshold': 'int',
        'month': 'int',
        'year': 'int',
    },
)

GOALS = FamilySpec(
    name='goals',
    partition_key=constant_key,
    ttl=datetime.timedelta(days=7),
    watched='current_amount',
    field_types={
        'name': 'string',
        'target_amount': 'decimal',
        'current_amount': 'decimal',
        'target_date': 'datetime',
        'color': 'string',
    },
    aggregate=AggregateSpec(
        sum_a=lambda r: r.get('current_amount'),
        sum_b=lambda r: r.get('target_amount'),
    ),
)

NOTIFICATIONS = FamilySpec(
    name='notifications',
    partition_key=constant_key,
    ttl=datetime.timedelta(hours=24),
    watched='is_read',
    reverse=True,
    field_types={
        'title': 'string',
        'message': 'string',
        'type': 'string',
        'is_read': 'bool',
        'related_id': 'string',
        'related_screen': 'string',
    },
)

FAMILIES: List[FamilySpec] = [TRANSACTIONS, BUDGETS, GOALS, NOTIFICATIONS]


def families(settings=None) -> Dict[str, FamilySpec]:
    """Return the entity families keyed by name, with TTLs taken from the ``cache`` settings."""
    if settings is None:
        from ..settings import lib
        settings = lib.settings
    ttl_hours = settings.get_section('cache')
    return {
        f.name: f.with_ttl(ttl_hours[f.name]) if f.name in ttl_hours else f
        for f in FAMILIES
    }


def new_transaction(
        amount,
        category: str,
        type: str = TransactionType.Expense,
        description: str = '',
        date: Optional[datetime.datetime] = None,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
        currency: str = 'USD',
) -> Record:
    return Record(
        id=None,
        fields={
            'amount': to_decimal(amount),
            'type': str(TransactionType(type)),
            'category': category,
            'description': description,
            'tags': list(tags or []),
            'notes': notes,
            'currency': currency,
        },
        timestamp=date or now_utc(),
    )


def new_budget(
        category: str,
        monthly_limit,
        month: int,
        year: int,
        alert_threshold: int = DEFAULT_ALERT_THRESHOLD,
        period: str = 'monthly',
        created_at: Optional[datetime.datetime] = None,
) -> Record:
    if not 1 <= int(month) <= 12:
        raise ValueError(f'Month must be between 1 and 12, got {month}.')
    return Record(
        id=None,
        fields={
            'category': category,
            'monthly_limit': to_decimal(monthly_limit),
            'period': period,
            'alert_threshold': int(alert_threshold),
            'month': int(month),
            'year': int(year),
        },
        timestamp=created_at or now_utc(),
    )


def new_goal(
        name: str,
        target_amount,
        target_date: datetime.datetime,
        current_amount=0,
        color: str = DEFAULT_GOAL_COLOR,
        created_at: Optional[datetime.datetime] = None,
) -> Record:
    return Record(
        id=None,
        fields={
            'name': name,
            'target_amount': to_decimal(target_amount),
            'current_amount': to_decimal(current_amount),
            'target_date': target_date,
            'color': color,
        },
        timestamp=created_at or now_utc(),
    )


def new_notification(
        title: str,
        message: str,
        type: str,
        related_id: Optional[str] = None,
        related_screen: Optional[str] = None,
        created_at: Optional[datetime.datetime] = None,
) -> Record:
    return Record(
        id=None,
        fields={
            'title': title,
            'message': message,
            'type': str(NotificationType(type)),
            'is_read': False,
            'related_id': related_id,
            'related_screen': related_screen,
        },
        timestamp=created_at or now_utc(),
    )
