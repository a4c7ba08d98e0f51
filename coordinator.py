"""Application state for a single signed-in budget.

The coordinator owns the local store handle and publishes immutable
``BudgetState`` snapshots. Every mutating verb persists first, reloads what
the write touched, then swaps the snapshot under the lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Protocol

from sqlalchemy.orm import Session

from cloud_sync import CloudSyncService
from config import Settings, get_settings
from database import Database
from models import TransactionType
from notifications import (
    Alert,
    LoggingNotifier,
    Notifier,
    category_budget_alerts,
    goal_alerts,
    spending_limit_alerts,
)
from periods import local_today
from providers import AuthUser, BillingProvider, NullBillingProvider
from recurrence import RecurringEngine
from schemas import (
    AppSettings,
    CategoryBudgetProgress,
    CategoryIn,
    CategoryOut,
    CloudSettings,
    CloudSnapshot,
    DashboardData,
    MonthlyTrend,
    RestoreResult,
    SavingsGoalIn,
    SavingsGoalOut,
    SavingsGoalUpdate,
    SETTING_DB_OWNER,
    SpendingSummary,
    SyncResult,
    TopCategory,
    TransactionIn,
    TransactionOut,
)
from services import (
    CategoryService,
    InsightsService,
    MetricsService,
    SavingsGoalService,
    SettingsService,
    TransactionService,
    clear_all_data,
)

logger = logging.getLogger(__name__)

AUTO_SYNC_JOB_ID = "auto_sync"

CATEGORIES = "categories"
TRANSACTIONS = "transactions"
GOALS = "goals"
SETTINGS = "settings"
DASHBOARD = "dashboard"
SPENDING = "spending"
ALL_PARTS = (CATEGORIES, TRANSACTIONS, DASHBOARD, GOALS, SETTINGS, SPENDING)


class CategoryLimitReached(ValueError):
    pass


class NotSignedIn(RuntimeError):
    pass


class JobRunner(Protocol):
    def submit(self, job_id: str, func: Callable[[], None]) -> None:
        ...


class InlineRunner:
    """Runs submitted jobs on the calling thread."""

    def submit(self, job_id: str, func: Callable[[], None]) -> None:
        func()


@dataclass(frozen=True)
class SyncStatus:
    in_progress: bool = False
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass(frozen=True)
class BudgetState:
    version: int = 0
    initialized: bool = False
    user: Optional[AuthUser] = None
    categories: tuple[CategoryOut, ...] = ()
    transactions: tuple[TransactionOut, ...] = ()
    savings_goals: tuple[SavingsGoalOut, ...] = ()
    dashboard: Optional[DashboardData] = None
    trends: tuple[MonthlyTrend, ...] = ()
    settings: AppSettings = field(default_factory=AppSettings)
    spending: SpendingSummary = field(default_factory=SpendingSummary)

    @property
    def currency(self) -> str:
        return self.settings.currency

    @property
    def is_premium(self) -> bool:
        return self.settings.is_premium


class Coordinator:
    def __init__(
        self,
        database: Database,
        cloud: Optional[CloudSyncService] = None,
        runner: Optional[JobRunner] = None,
        billing: Optional[BillingProvider] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], date] = local_today,
    ) -> None:
        self.database = database
        self.cloud = cloud
        self.runner = runner or InlineRunner()
        self.billing = billing or NullBillingProvider()
        self.notifier = notifier or LoggingNotifier()
        self.settings = settings or get_settings()
        self.clock = clock
        self._lock = threading.RLock()
        self._status_lock = threading.Lock()
        self._state = BudgetState()
        self._sync_status = SyncStatus()

    @property
    def state(self) -> BudgetState:
        return self._state

    @property
    def sync_status(self) -> SyncStatus:
        in_progress = self.cloud.in_progress if self.cloud is not None else False
        return replace(self._sync_status, in_progress=in_progress)

    def _publish(self, **changes: Any) -> BudgetState:
        self._state = replace(self._state, version=self._state.version + 1, **changes)
        return self._state

    def _set_sync_status(self, **changes: Any) -> None:
        with self._status_lock:
            self._sync_status = replace(self._sync_status, **changes)

    # Loading

    def _reload(
        self, session: Session, parts: Iterable[str], base: Optional[dict] = None
    ) -> dict[str, Any]:
        changes: dict[str, Any] = dict(base or {})
        today = self.clock()
        for part in parts:
            if part == CATEGORIES:
                changes["categories"] = tuple(
                    CategoryOut.from_model(c) for c in CategoryService(session).list_all()
                )
            elif part == TRANSACTIONS:
                changes["transactions"] = tuple(TransactionService(session).list_all())
            elif part == GOALS:
                changes["savings_goals"] = tuple(
                    SavingsGoalOut.from_model(g)
                    for g in SavingsGoalService(session).list_all()
                )
            elif part == SETTINGS:
                changes["settings"] = SettingsService(session).load()
            elif part == DASHBOARD:
                changes["dashboard"] = MetricsService(session).dashboard(
                    today.year, today.month
                )
                changes["trends"] = tuple(
                    InsightsService(session).monthly_trends(
                        today, self.settings.trend_months
                    )
                )
            elif part == SPENDING:
                settings = changes.get("settings", self._state.settings)
                changes["spending"] = MetricsService(session).spending_summary(
                    today, settings.daily_limit, settings.weekly_limit
                )
            else:
                raise ValueError(f"Unknown state part: {part}")
        return changes

    def _step(self, name: str, func: Callable[[Session], Any]) -> Any:
        try:
            with self.database.session_scope() as session:
                result = func(session)
        except Exception:
            logger.exception(f"initialize_step_failed: step={name}")
            return None
        logger.info(f"initialize_step: step={name}")
        return result

    def initialize(self) -> BudgetState:
        with self._lock:
            self.database.open()
            self._step(
                "remove_duplicates", lambda s: CategoryService(s).remove_duplicates()
            )
            changes: dict[str, Any] = {}
            for part in ALL_PARTS:
                loaded = self._step(
                    f"load_{part}", lambda s, p=part: self._reload(s, (p,), changes)
                )
                if loaded is not None:
                    changes = loaded
            today = self.clock()
            posted = self._step(
                "recurring", lambda s: RecurringEngine(s).post_due(today)
            )
            if posted:
                reloaded = self._step(
                    "reload_after_recurring",
                    lambda s: self._reload(s, (TRANSACTIONS, DASHBOARD, SPENDING), changes),
                )
                if reloaded is not None:
                    changes = reloaded
            self._publish(initialized=True, **changes)
        self.sync_premium_with_billing()
        return self._state

    def refresh(self) -> BudgetState:
        with self._lock:
            with self.database.session_scope() as session:
                changes = self._reload(session, ALL_PARTS)
            return self._publish(**changes)

    def _mutate(self, func: Callable[[Session], Any], parts: Iterable[str]) -> Any:
        with self._lock:
            with self.database.session_scope() as session:
                result = func(session)
                changes = self._reload(session, parts)
            self._publish(**changes)
        return result

    # Transactions

    def add_transaction(self, data: TransactionIn) -> TransactionOut:
        def _create(session: Session) -> TransactionOut:
            service = TransactionService(session)
            return service.read(service.create(data).id)

        created = self._mutate(_create, (TRANSACTIONS, DASHBOARD, SPENDING))
        logger.info(f"transaction_added: id={created.id} type={created.type.value}")
        self.schedule_auto_sync()
        self._notify_after_expense(data)
        return created

    def update_transaction(self, transaction_id: int, data: TransactionIn) -> TransactionOut:
        def _update(session: Session) -> TransactionOut:
            service = TransactionService(session)
            return service.read(service.update(transaction_id, data).id)

        updated = self._mutate(_update, (TRANSACTIONS, DASHBOARD, SPENDING))
        self.schedule_auto_sync()
        self._notify_after_expense(data)
        return updated

    def delete_transaction(self, transaction_id: int) -> None:
        self._mutate(
            lambda s: TransactionService(s).delete(transaction_id),
            (TRANSACTIONS, DASHBOARD, SPENDING),
        )
        self.schedule_auto_sync()

    def transactions_for_month(self, year: int, month: int) -> list[TransactionOut]:
        with self.database.session_scope() as session:
            return TransactionService(session).list_for_month(year, month)

    def transactions_between(self, start: date, end: date) -> list[TransactionOut]:
        with self.database.session_scope() as session:
            return TransactionService(session).list_between(start, end)

    def transactions_for_category(self, category_id: int) -> list[TransactionOut]:
        with self.database.session_scope() as session:
            return TransactionService(session).list_for_category(category_id)

    def search_tag(self, tag: str) -> list[TransactionOut]:
        with self.database.session_scope() as session:
            return TransactionService(session).search_tag(tag)

    def recurring_transactions(self) -> list[TransactionOut]:
        with self.database.session_scope() as session:
            return TransactionService(session).list_recurring()

    # Categories

    def add_category(self, data: CategoryIn) -> CategoryOut:
        with self._lock:
            state = self._state
            limit = self.settings.free_category_limit
            if not state.is_premium and len(state.categories) >= limit:
                raise CategoryLimitReached(
                    f"Free users are limited to {limit} categories. "
                    "Upgrade to Premium for unlimited categories!"
                )
            created = self._mutate(
                lambda s: CategoryOut.from_model(CategoryService(s).create(data)),
                (CATEGORIES, DASHBOARD),
            )
        logger.info(f"category_added: id={created.id}")
        self.schedule_auto_sync()
        return created

    def update_category_budget(self, category_id: int, monthly_budget: Decimal) -> CategoryOut:
        updated = self._mutate(
            lambda s: CategoryOut.from_model(
                CategoryService(s).update_budget(category_id, monthly_budget)
            ),
            (CATEGORIES, DASHBOARD),
        )
        self.schedule_auto_sync()
        return updated

    def set_category_exclude_from_limits(self, category_id: int, exclude: bool) -> CategoryOut:
        updated = self._mutate(
            lambda s: CategoryOut.from_model(
                CategoryService(s).set_exclude_from_limits(category_id, exclude)
            ),
            (CATEGORIES, SPENDING),
        )
        self.schedule_auto_sync()
        return updated

    def delete_category(self, category_id: int) -> None:
        self._mutate(
            lambda s: CategoryService(s).delete(category_id),
            (CATEGORIES, TRANSACTIONS, DASHBOARD, SPENDING),
        )
        self.schedule_auto_sync()

    def category_budget_progress(self) -> list[CategoryBudgetProgress]:
        today = self.clock()
        with self.database.session_scope() as session:
            return MetricsService(session).category_budget_progress(today.year, today.month)

    def top_categories(self, limit: int = 3) -> list[TopCategory]:
        with self.database.session_scope() as session:
            return InsightsService(session).top_categories(limit)

    def dashboard_for(self, year: int, month: int) -> DashboardData:
        with self.database.session_scope() as session:
            return MetricsService(session).dashboard(year, month)

    # Savings goals

    def add_goal(self, data: SavingsGoalIn) -> SavingsGoalOut:
        created = self._mutate(
            lambda s: SavingsGoalOut.from_model(SavingsGoalService(s).create(data)),
            (GOALS,),
        )
        self.schedule_auto_sync()
        return created

    def contribute_to_goal(self, goal_id: int, amount: Decimal) -> SavingsGoalOut:
        goal = self._mutate(
            lambda s: SavingsGoalOut.from_model(
                SavingsGoalService(s).contribute(goal_id, amount)
            ),
            (GOALS,),
        )
        self.schedule_auto_sync()
        self._deliver(goal_alerts([goal], self._state.currency))
        return goal

    def update_goal(self, goal_id: int, data: SavingsGoalUpdate) -> SavingsGoalOut:
        goal = self._mutate(
            lambda s: SavingsGoalOut.from_model(SavingsGoalService(s).update(goal_id, data)),
            (GOALS,),
        )
        self.schedule_auto_sync()
        return goal

    def delete_goal(self, goal_id: int) -> None:
        self._mutate(lambda s: SavingsGoalService(s).delete(goal_id), (GOALS,))
        self.schedule_auto_sync()

    # Settings

    def _save_settings(
        self, changes: dict[str, Any], refresh_spending: bool = False
    ) -> AppSettings:
        parts = (SETTINGS, SPENDING) if refresh_spending else (SETTINGS,)

        def _write(session: Session) -> AppSettings:
            service = SettingsService(session)
            return service.save(service.load().model_copy(update=changes))

        self._mutate(_write, parts)
        return self._state.settings

    def set_currency(self, currency: str) -> AppSettings:
        currency = currency.strip()
        if not currency:
            raise ValueError("Currency cannot be empty")
        settings = self._save_settings({"currency": currency})
        self.schedule_auto_sync()
        return settings

    def set_daily_limit(self, limit: Decimal) -> AppSettings:
        if limit < 0:
            raise ValueError("Daily limit cannot be negative")
        settings = self._save_settings({"daily_limit": limit}, refresh_spending=True)
        self.schedule_auto_sync()
        return settings

    def set_weekly_limit(self, limit: Decimal) -> AppSettings:
        if limit < 0:
            raise ValueError("Weekly limit cannot be negative")
        settings = self._save_settings({"weekly_limit": limit}, refresh_spending=True)
        self.schedule_auto_sync()
        return settings

    def set_premium_status(self, status: bool) -> AppSettings:
        changes: dict[str, Any] = {"is_premium": status}
        if status:
            changes["premium_purchase_date"] = datetime.now(timezone.utc)
        logger.info(f"premium_status: is_premium={status}")
        return self._save_settings(changes)

    def toggle_auto_sync(self, enabled: bool) -> AppSettings:
        return self._save_settings({"auto_sync_enabled": enabled})

    def complete_onboarding(self) -> AppSettings:
        user = self._require_user()
        return self._save_settings(
            {"onboarding_completed": True, "onboarding_user_id": user.uid}
        )

    def check_onboarding(self) -> bool:
        user = self._state.user
        if user is None:
            return False
        with self.database.session_scope() as session:
            settings = SettingsService(session).load()
        return settings.onboarding_completed and settings.onboarding_user_id == user.uid

    def reset_app(self) -> BudgetState:
        with self._lock:
            with self.database.session_scope() as session:
                clear_all_data(session)
                settings = SettingsService(session).load()
            previous = self._state
            self._state = BudgetState(
                version=previous.version + 1,
                initialized=previous.initialized,
                user=previous.user,
                settings=settings,
            )
            logger.info("app_reset")
            return self._state

    # Auth

    def _require_user(self) -> AuthUser:
        user = self._state.user
        if user is None:
            raise NotSignedIn("Sign in to use this feature")
        return user

    def sign_in(self, user: AuthUser) -> bool:
        """Attach ``user`` to the local store; returns True when local data was wiped."""
        with self._lock:
            previous = self._state.user
            with self.database.session_scope() as session:
                owner = SettingsService(session).get(SETTING_DB_OWNER)
            switched = previous is not None and previous.uid != user.uid
            needs_reset = switched or owner != user.uid
            if needs_reset:
                logger.info(
                    f"sign_in_reset: user={user.uid} previous={previous.uid if previous else None} "
                    f"owner={owner}"
                )
                self.reset_app()
            with self.database.session_scope() as session:
                SettingsService(session).set(SETTING_DB_OWNER, user.uid)
                changes = self._reload(session, (SETTINGS,))
            self._publish(user=user, **changes)
        try:
            self.billing.login(user.uid)
        except Exception:
            logger.exception(f"billing_login_failed: user={user.uid}")
        return needs_reset

    def sign_out(self) -> None:
        with self._lock:
            self._publish(user=None)
        try:
            self.billing.logout()
        except Exception:
            logger.exception("billing_logout_failed")

    # Premium

    def sync_premium_with_billing(self) -> bool:
        try:
            info = self.billing.get_customer_info()
        except Exception:
            logger.exception("premium_sync_failed")
            return False
        active = self.billing.is_premium_entitlement_active(info)
        if active and not self._state.is_premium:
            self._save_settings({"is_premium": True})
        elif not active and self._state.is_premium:
            logger.info("premium_expired")
            self._save_settings({"is_premium": False})
        return active

    def check_premium_status(self) -> bool:
        try:
            info = self.billing.get_customer_info()
        except Exception:
            logger.exception("premium_check_failed")
            return self._state.is_premium
        if self.billing.is_premium_entitlement_active(info):
            if not self._state.is_premium:
                self._save_settings({"is_premium": True})
            return True
        return self._state.is_premium

    def purchase_premium(self, package_id: str) -> bool:
        info = self.billing.purchase(package_id)
        active = self.billing.is_premium_entitlement_active(info)
        if active:
            self.set_premium_status(True)
        return active

    def restore_purchases(self) -> bool:
        info = self.billing.restore()
        active = self.billing.is_premium_entitlement_active(info)
        if active:
            self.set_premium_status(True)
        return active

    # Alerts

    def _deliver(self, alerts: list[Alert]) -> None:
        if not alerts:
            return
        try:
            self.notifier.deliver(alerts)
        except Exception:
            logger.exception("alert_delivery_failed")

    def _notify_after_expense(self, data: TransactionIn) -> None:
        if data.type != TransactionType.expense or data.exclude_from_limits:
            return
        state = self._state
        alerts = spending_limit_alerts(state.spending, state.currency)
        if data.category_id is not None:
            try:
                progress = self.category_budget_progress()
            except Exception:
                logger.exception("category_budget_check_failed")
                progress = []
            alerts += category_budget_alerts(progress, state.currency)
        self._deliver(alerts)

    # Cloud

    def _require_cloud(self) -> CloudSyncService:
        if self.cloud is None:
            raise RuntimeError("Cloud sync is not configured")
        return self.cloud

    def _snapshot(self, state: BudgetState) -> CloudSnapshot:
        return CloudSnapshot(
            categories=list(state.categories),
            transactions=list(state.transactions),
            savings_goals=list(state.savings_goals),
            settings=CloudSettings.from_app_settings(state.settings),
        )

    def sync_to_cloud(self) -> SyncResult:
        user = self._require_user()
        cloud = self._require_cloud()
        result = cloud.push(user.uid, self._snapshot(self._state))
        if result.success:
            self._set_sync_status(last_synced_at=result.timestamp, last_error=None)
        return result

    def schedule_auto_sync(self) -> bool:
        state = self._state
        if self.cloud is None or state.user is None:
            return False
        if not state.settings.auto_sync_enabled:
            return False
        if self.cloud.in_progress:
            logger.info("auto_sync_skipped: reason=in_progress")
            return False
        try:
            self.runner.submit(AUTO_SYNC_JOB_ID, self._run_auto_sync)
        except Exception:
            logger.exception("auto_sync_schedule_failed")
            return False
        return True

    def _run_auto_sync(self) -> None:
        state = self._state
        if self.cloud is None or state.user is None:
            return
        try:
            result = self.cloud.push(state.user.uid, self._snapshot(state))
        except Exception as exc:
            logger.exception(f"auto_sync_failed: user={state.user.uid}")
            self._set_sync_status(last_error=str(exc))
            return
        if result.success:
            self._set_sync_status(last_synced_at=result.timestamp, last_error=None)

    def restore_from_cloud(self) -> RestoreResult:
        """Merge the signed-in user's backup into the local store.

        Remote rows are matched against local ones and only the missing rows
        are inserted, so local data is never overwritten and restoring twice
        changes nothing. The whole merge commits or rolls back as one unit.
        """
        user = self._require_user()
        backup = self._require_cloud().pull(user.uid)

        def _apply(session: Session) -> RestoreResult:
            categories = CategoryService(session)
            category_ids: dict[int, int] = {}
            for doc in backup.categories:
                remote = CategoryOut.model_validate(doc)
                category_ids[remote.id] = categories.merge(remote)

            remote_txns = [TransactionOut.model_validate(doc) for doc in backup.transactions]
            # templates first so occurrences can point at their local id
            remote_txns.sort(key=lambda txn: txn.origin_id is not None)
            transactions = TransactionService(session)
            transaction_ids: dict[int, int] = {}
            for remote in remote_txns:
                local = remote.model_copy(
                    update={
                        "category_id": category_ids.get(remote.category_id),
                        "origin_id": transaction_ids.get(remote.origin_id),
                    }
                )
                transaction_ids[remote.id] = transactions.merge(
                    local, claimed=transaction_ids.values()
                )

            goals = SavingsGoalService(session)
            goal_ids: dict[int, int] = {}
            for doc in backup.savings_goals:
                remote_goal = SavingsGoalOut.model_validate(doc)
                goal_ids[remote_goal.id] = goals.merge(
                    remote_goal, claimed=goal_ids.values()
                )

            settings_restored = False
            if backup.settings:
                remote_settings = CloudSettings.model_validate(backup.settings)
                service = SettingsService(session)
                service.save(
                    service.load().model_copy(
                        update={
                            "currency": remote_settings.selected_currency,
                            "daily_limit": remote_settings.daily_limit,
                            "weekly_limit": remote_settings.weekly_limit,
                        }
                    )
                )
                settings_restored = True

            return RestoreResult(
                categories=len(backup.categories),
                transactions=len(backup.transactions),
                savings_goals=len(backup.savings_goals),
                settings_restored=settings_restored,
            )

        result = self._mutate(_apply, ALL_PARTS)
        logger.info(
            f"cloud_restore: user={user.uid} categories={result.categories} "
            f"transactions={result.transactions} goals={result.savings_goals}"
        )
        return result

    def last_sync_time(self) -> Optional[datetime]:
        user = self._state.user
        if user is None or self.cloud is None:
            return None
        try:
            return self.cloud.last_sync_time(user.uid)
        except Exception:
            logger.exception(f"last_sync_time_failed: user={user.uid}")
            return None

    def has_cloud_backup(self) -> bool:
        user = self._state.user
        if user is None or self.cloud is None:
            return False
        try:
            return self.cloud.has_backup(user.uid)
        except Exception:
            logger.exception(f"has_cloud_backup_failed: user={user.uid}")
            return False

    def delete_cloud_data(self) -> SyncResult:
        user = self._require_user()
        return self._require_cloud().delete_all(user.uid)
