import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from cloud_sync import CloudSyncService, SQLDocumentStore
from config import get_settings
from coordinator import CategoryLimitReached, Coordinator, NotSignedIn
from database import Database
from periods import resolve_period
from providers import AuthUser
from scheduler import SchedulerManager
from schemas import (
    AuthUserIn,
    CategoryBudgetIn,
    CategoryExcludeIn,
    CategoryIn,
    ContributionIn,
    CurrencyIn,
    LimitIn,
    SavingsGoalIn,
    SavingsGoalUpdate,
    ToggleIn,
    TransactionIn,
)
from services import DuplicateCategory, NotFound

logger = logging.getLogger(__name__)


def build_coordinator(scheduler_manager: Optional[SchedulerManager]) -> Coordinator:
    settings = get_settings()
    return Coordinator(
        Database(settings.database_url),
        cloud=CloudSyncService(SQLDocumentStore.from_url(settings.cloud_database_url)),
        runner=scheduler_manager,
        settings=settings,
    )


def get_coordinator(request: Request) -> Coordinator:
    return request.app.state.coordinator


def _error_status(exc: Exception) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (CategoryLimitReached, DuplicateCategory)):
        return 409
    if isinstance(exc, NotSignedIn):
        return 401
    return 400


def create_app(
    coordinator: Optional[Coordinator] = None,
    scheduler_manager: Optional[SchedulerManager] = None,
) -> FastAPI:
    app = FastAPI(title="Prosper Budget")
    app.state.coordinator = coordinator
    if coordinator is None and scheduler_manager is None:
        scheduler_manager = SchedulerManager()

    @app.on_event("startup")
    def startup_event():
        if scheduler_manager is not None:
            scheduler_manager.start()
        if app.state.coordinator is None:
            app.state.coordinator = build_coordinator(scheduler_manager)
        app.state.coordinator.initialize()

    @app.on_event("shutdown")
    def shutdown_event():
        if scheduler_manager is not None:
            scheduler_manager.stop()

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=_error_status(exc), content={"detail": str(exc)})

    @app.exception_handler(NotSignedIn)
    async def not_signed_in_handler(request: Request, exc: NotSignedIn):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    @app.get("/state")
    def read_state(coordinator: Coordinator = Depends(get_coordinator)):
        state = coordinator.state
        return {
            "version": state.version,
            "initialized": state.initialized,
            "user": state.user,
            "settings": state.settings,
            "dashboard": state.dashboard,
            "trends": list(state.trends),
            "spending": state.spending,
        }

    @app.get("/dashboard")
    def dashboard(
        year: Optional[int] = None,
        month: Optional[int] = None,
        coordinator: Coordinator = Depends(get_coordinator),
    ):
        if year is None or month is None:
            return coordinator.state.dashboard
        if not 1 <= month <= 12:
            raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
        return coordinator.dashboard_for(year, month)

    @app.get("/insights/trends")
    def trends(coordinator: Coordinator = Depends(get_coordinator)):
        return list(coordinator.state.trends)

    @app.get("/insights/top-categories")
    def top_categories(limit: int = 3, coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.top_categories(limit)

    @app.get("/budgets/progress")
    def budget_progress(coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.category_budget_progress()

    # Categories

    @app.get("/categories")
    def list_categories(coordinator: Coordinator = Depends(get_coordinator)):
        return list(coordinator.state.categories)

    @app.post("/categories", status_code=201)
    def create_category(payload: CategoryIn, coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.add_category(payload)

    @app.put("/categories/{category_id}/budget")
    def update_category_budget(
        category_id: int,
        payload: CategoryBudgetIn,
        coordinator: Coordinator = Depends(get_coordinator),
    ):
        return coordinator.update_category_budget(category_id, payload.monthly_budget)

    @app.put("/categories/{category_id}/exclude")
    def update_category_exclude(
        category_id: int,
        payload: CategoryExcludeIn,
        coordinator: Coordinator = Depends(get_coordinator),
    ):
        return coordinator.set_category_exclude_from_limits(
            category_id, payload.exclude_from_limits
        )

    @app.delete("/categories/{category_id}", status_code=204)
    def delete_category(category_id: int, coordinator: Coordinator = Depends(get_coordinator)):
        coordinator.delete_category(category_id)

    # Transactions

    @app.get("/transactions")
    def list_transactions(
        period: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        category_id: Optional[int] = None,
        tag: Optional[str] = None,
        coordinator: Coordinator = Depends(get_coordinator),
    ):
        if tag:
            return coordinator.search_tag(tag)
        if category_id is not None:
            return coordinator.transactions_for_category(category_id)
        if period:
            window = resolve_period(period, start, end, today=coordinator.clock())
            return coordinator.transactions_between(window.start, window.end)
        return list(coordinator.state.transactions)

    @app.get("/transactions/recurring")
    def list_recurring(coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.recurring_transactions()

    @app.post("/transactions", status_code=201)
    def create_transaction(
        payload: TransactionIn, coordinator: Coordinator = Depends(get_coordinator)
    ):
        return coordinator.add_transaction(payload)

    @app.put("/transactions/{transaction_id}")
    def update_transaction(
        transaction_id: int,
        payload: TransactionIn,
        coordinator: Coordinator = Depends(get_coordinator),
    ):
        return coordinator.update_transaction(transaction_id, payload)

    @app.delete("/transactions/{transaction_id}", status_code=204)
    def delete_transaction(
        transaction_id: int, coordinator: Coordinator = Depends(get_coordinator)
    ):
        coordinator.delete_transaction(transaction_id)

    # Savings goals

    @app.get("/goals")
    def list_goals(coordinator: Coordinator = Depends(get_coordinator)):
        return list(coordinator.state.savings_goals)

    @app.post("/goals", status_code=201)
    def create_goal(payload: SavingsGoalIn, coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.add_goal(payload)

    @app.post("/goals/{goal_id}/contributions")
    def contribute(
        goal_id: int,
        payload: ContributionIn,
        coordinator: Coordinator = Depends(get_coordinator),
    ):
        return coordinator.contribute_to_goal(goal_id, payload.amount)

    @app.put("/goals/{goal_id}")
    def update_goal(
        goal_id: int,
        payload: SavingsGoalUpdate,
        coordinator: Coordinator = Depends(get_coordinator),
    ):
        return coordinator.update_goal(goal_id, payload)

    @app.delete("/goals/{goal_id}", status_code=204)
    def delete_goal(goal_id: int, coordinator: Coordinator = Depends(get_coordinator)):
        coordinator.delete_goal(goal_id)

    # Settings

    @app.get("/settings")
    def read_settings(coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.state.settings

    @app.put("/settings/currency")
    def set_currency(payload: CurrencyIn, coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.set_currency(payload.currency)

    @app.put("/settings/daily-limit")
    def set_daily_limit(payload: LimitIn, coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.set_daily_limit(payload.limit)

    @app.put("/settings/weekly-limit")
    def set_weekly_limit(payload: LimitIn, coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.set_weekly_limit(payload.limit)

    @app.put("/settings/auto-sync")
    def set_auto_sync(payload: ToggleIn, coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.toggle_auto_sync(payload.enabled)

    @app.post("/reset")
    def reset(coordinator: Coordinator = Depends(get_coordinator)):
        state = coordinator.reset_app()
        return {"version": state.version}

    # Auth and onboarding

    @app.post("/auth/sign-in")
    def sign_in(payload: AuthUserIn, coordinator: Coordinator = Depends(get_coordinator)):
        user = AuthUser(
            uid=payload.uid,
            email=payload.email,
            email_verified=payload.email_verified,
            display_name=payload.display_name,
            provider_ids=tuple(payload.provider_ids),
        )
        wiped = coordinator.sign_in(user)
        return {"uid": user.uid, "local_data_reset": wiped}

    @app.post("/auth/sign-out", status_code=204)
    def sign_out(coordinator: Coordinator = Depends(get_coordinator)):
        coordinator.sign_out()

    @app.get("/onboarding")
    def onboarding(coordinator: Coordinator = Depends(get_coordinator)):
        return {"completed": coordinator.check_onboarding()}

    @app.post("/onboarding/complete")
    def complete_onboarding(coordinator: Coordinator = Depends(get_coordinator)):
        coordinator.complete_onboarding()
        return {"completed": True}

    # Premium

    @app.get("/premium")
    def premium_status(coordinator: Coordinator = Depends(get_coordinator)):
        return {"is_premium": coordinator.check_premium_status()}

    @app.post("/premium/purchase/{package_id}")
    def purchase(package_id: str, coordinator: Coordinator = Depends(get_coordinator)):
        return {"is_premium": coordinator.purchase_premium(package_id)}

    @app.post("/premium/restore")
    def restore_purchases(coordinator: Coordinator = Depends(get_coordinator)):
        return {"is_premium": coordinator.restore_purchases()}

    # Cloud

    @app.post("/sync")
    def sync_now(coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.sync_to_cloud()

    @app.get("/sync/status")
    def sync_status(coordinator: Coordinator = Depends(get_coordinator)):
        status = coordinator.sync_status
        return {
            "in_progress": status.in_progress,
            "last_synced_at": status.last_synced_at,
            "last_error": status.last_error,
            "last_cloud_sync": coordinator.last_sync_time(),
            "has_backup": coordinator.has_cloud_backup(),
        }

    @app.post("/sync/restore")
    def restore_from_cloud(coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.restore_from_cloud()

    @app.delete("/sync")
    def delete_cloud_data(coordinator: Coordinator = Depends(get_coordinator)):
        return coordinator.delete_cloud_data()


app = create_app()
