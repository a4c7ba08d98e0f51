import os
import tempfile
from datetime import date
from pathlib import Path

import pytest

os.environ.setdefault(
    "PROSPER_DATA_DIR", str(Path(tempfile.gettempdir()) / "prosper-tests")
)

from cloud_sync import CloudSyncService, SQLDocumentStore  # noqa: E402
from config import Settings  # noqa: E402
from coordinator import Coordinator, InlineRunner  # noqa: E402
from database import Database, create_db_engine  # noqa: E402
from notifications import CollectingNotifier  # noqa: E402
from providers import (  # noqa: E402
    ENTITLEMENT_ID,
    BillingPackage,
    BillingProvider,
    CustomerInfo,
)


class FakeBilling(BillingProvider):
    def __init__(self, premium: bool = False) -> None:
        self.premium = premium
        self.logged_in: list[str] = []
        self.fail = False

    def _info(self) -> CustomerInfo:
        if self.fail:
            raise RuntimeError("billing offline")
        entitlements = frozenset({ENTITLEMENT_ID}) if self.premium else frozenset()
        return CustomerInfo(active_entitlements=entitlements)

    def login(self, user_id: str) -> CustomerInfo:
        self.logged_in.append(user_id)
        return self._info()

    def logout(self) -> None:
        self.logged_in.clear()

    def get_customer_info(self) -> CustomerInfo:
        return self._info()

    def list_packages(self) -> list[BillingPackage]:
        return [BillingPackage(identifier="$rc_monthly", product_id="pro_monthly", price="$4.99")]

    def purchase(self, package_id: str) -> CustomerInfo:
        self.premium = True
        return self._info()

    def restore(self) -> CustomerInfo:
        return self._info()


class RecordingRunner(InlineRunner):
    def __init__(self) -> None:
        self.submitted: list[str] = []

    def submit(self, job_id, func) -> None:
        self.submitted.append(job_id)
        super().submit(job_id, func)


class Clock:
    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        cloud_database_url="sqlite://",
        timezone="UTC",
        free_category_limit=5,
        trend_months=6,
    )


@pytest.fixture
def clock() -> Clock:
    return Clock(date(2024, 3, 15))


@pytest.fixture
def database():
    db = Database("sqlite://")
    yield db
    db.dispose()


@pytest.fixture
def cloud() -> CloudSyncService:
    return CloudSyncService(SQLDocumentStore(create_db_engine("sqlite://")))


@pytest.fixture
def billing() -> FakeBilling:
    return FakeBilling()


@pytest.fixture
def notifier() -> CollectingNotifier:
    return CollectingNotifier()


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def coordinator(database, cloud, runner, billing, notifier, app_settings, clock) -> Coordinator:
    coord = Coordinator(
        database,
        cloud=cloud,
        runner=runner,
        billing=billing,
        notifier=notifier,
        settings=app_settings,
        clock=clock,
    )
    coord.initialize()
    return coord
