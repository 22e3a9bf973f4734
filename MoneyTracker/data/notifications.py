"""Budget alerts and the notification inbox.

:class:`NotificationService` derives budget warning and budget exceeded notifications from
the spending of the current month. A :class:`~MoneyTracker.core.session.SessionGuard` makes
sure every budget raises at most one alert per month and session, however often the check
runs, and gates the startup batch check to once per session.

Notifications are ordinary records of the ``notifications`` family and are written through
the family's :class:`~MoneyTracker.core.mutation.MutationCoordinator`.
"""
import logging
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Mapping, Optional

from .models import DEFAULT_ALERT_THRESHOLD, NotificationType, new_notification
from ..core.mutation import Mutation, MutationCoordinator
from ..core.records import Record, now_utc, to_decimal
from ..core.session import SessionGuard, idempotency_key
from ..settings import locale as _locale
from ..status import status

RELATED_SCREEN: str = 'budget'


class NotificationService:
    """Creates budget alerts and manages the notification inbox.

    Args:
        container: State container of the ``notifications`` family.
        coordinator: Mutation coordinator of the same container.
        guard: The session guard owned by the client.
        locale: Locale used to format amounts and percentages.
        currency: Currency code, defaults to the locale's currency.
        default_threshold: Warning threshold of budgets without one, in percent.
        clock: Returns the current time.
    """

    def __init__(
            self,
            container,
            coordinator: MutationCoordinator,
            guard: SessionGuard,
            locale: str = 'en_US',
            currency: Optional[str] = None,
            default_threshold: int = DEFAULT_ALERT_THRESHOLD,
            clock: Callable = now_utc,
    ) -> None:
        self.container = container
        self.coordinator = coordinator
        self.guard = guard
        self.locale = locale
        self.currency = currency
        self.default_threshold = default_threshold
        self.clock = clock

    @property
    def notifications(self) -> List[Record]:
        return self.container.items

    def unread_count(self) -> int:
        return sum(1 for n in self.container.items if not n.get('is_read'))

    def exists(self, related_id: str, notification_type: str) -> bool:
        """Return True if a notification of the given type refers to ``related_id``."""
        return any(
            n.get('related_id') == related_id and n.get('type') == notification_type
            for n in self.container.items
        )

    def _money(self, value: Decimal) -> str:
        return _locale.format_currency_value(value, self.locale, self.currency)

    def _warning(self, budget: Record, spent: Decimal, limit: Decimal, percentage: Decimal) -> Record:
        category = budget.get('category')
        return new_notification(
            title=f'Budget Alert: {category}',
            message=(
                f'You\'ve spent {_locale.format_percentage(percentage, self.locale)} of your {category} budget. '
                f'Current: {self._money(spent)} / {self._money(limit)}'
            ),
            type=NotificationType.BudgetWarning,
            related_id=budget.id,
            related_screen=RELATED_SCREEN,
            created_at=self.clock(),
        )

    def _exceeded(self, budget: Record, spent: Decimal, limit: Decimal) -> Record:
        category = budget.get('category')
        return new_notification(
            title=f'Budget Exceeded: {category}',
            message=(
                f'You\'ve exceeded your {category} budget! '
                f'Spent: {self._money(spent)} / Limit: {self._money(limit)}'
            ),
            type=NotificationType.BudgetExceeded,
            related_id=budget.id,
            related_screen=RELATED_SCREEN,
            created_at=self.clock(),
        )

    async def check_and_maybe_create(self, budget: Record, spent: Any) -> Optional[Mutation]:
        """Create a budget alert if the budget crossed its threshold or its limit.

        Only budgets of the current month are checked. An alert is skipped if the budget
        already raised one this month and session, or if a notification of the same type for
        the budget already exists.

        Args:
            budget: A ``budgets`` record.
            spent: The spending in the budget's category this month.

        Returns:
            The create mutation of the new notification, or None.

        Raises:
            status.MutationFailedException: If the notification could not be written remotely.
                It stays in the inbox and is queued for the next sync.
        """
        now = self.clock()
        year, month = budget.get('year'), budget.get('month')
        if year != now.year or month != now.month:
            return None

        limit = to_decimal(budget.get('monthly_limit'))
        if limit <= 0:
            return None
        spent = to_decimal(spent)
        percentage = spent / limit * 100
        threshold = budget.get('alert_threshold') or self.default_threshold

        if spent > limit:
            kind = NotificationType.BudgetExceeded
        elif percentage >= threshold:
            kind = NotificationType.BudgetWarning
        else:
            return None

        key = idempotency_key(budget.id, f'{year:04d}-{month:02d}')
        if key in self.guard:
            logging.debug(f'Budget "{budget.get("category")}" already alerted this session.')
            return None
        if self.exists(budget.id, kind):
            logging.debug(f'A {kind} notification for "{budget.get("category")}" already exists.')
            return None
        if not self.guard.should_process(key):
            return None

        if kind == NotificationType.BudgetExceeded:
            record = self._exceeded(budget, spent, limit)
        else:
            record = self._warning(budget, spent, limit, percentage)

        logging.info(f'Creating {kind} notification for "{budget.get("category")}".')
        try:
            mutation = await self.coordinator.create(record)
        except status.MutationFailedException as ex:
            self._notify(ex.mutation.record)
            raise
        self._notify(mutation.record)
        return mutation

    def _notify(self, record: Record) -> None:
        from ..signals import signals
        signals.notificationCreated.emit(record)

    async def check_all(self, budgets: Iterable[Record], spending: Mapping[str, Any]) -> int:
        """Check every budget of the current month once per session.

        Args:
            budgets: ``budgets`` records.
            spending: Spending of the current month keyed by category.

        Returns:
            int: The number of notifications created.
        """
        if not self.guard.begin_batch():
            logging.debug('Budgets were already checked this session.')
            return 0

        created = 0
        for budget in list(budgets):
            spent = spending.get(budget.get('category'), 0)
            try:
                mutation = await self.check_and_maybe_create(budget, spent)
            except status.MutationFailedException as ex:
                logging.warning(f'Budget alert for "{budget.get("category")}" queued for sync: {ex}')
                created += 1
                continue
            if mutation is not None:
                created += 1
        logging.debug(f'Budget check complete, {created} notification(s) created.')
        return created

    async def mark_as_read(self, notification_id: str) -> Mutation:
        return await self.coordinator.update(notification_id, {'is_read': True})

    async def mark_all_as_read(self) -> List[Mutation]:
        ids = [n.id for n in self.container.items if not n.get('is_read')]
        return await self.coordinator.update_many(ids, {'is_read': True})

    async def delete_notification(self, notification_id: str) -> Mutation:
        return await self.coordinator.delete(notification_id)

    async def delete_all(self) -> List[Mutation]:
        return await self.coordinator.delete_many([n.id for n in self.container.items])

    async def delete_all_read(self) -> List[Mutation]:
        return await self.coordinator.delete_many([n.id for n in self.container.items if n.get('is_read')])
