"""Narrow interfaces onto the identity and billing services the core depends on."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

ENTITLEMENT_ID = "Prosper Budget Planner Pro"


@dataclass(frozen=True)
class AuthUser:
    uid: str
    email: Optional[str] = None
    email_verified: bool = False
    display_name: Optional[str] = None
    provider_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class CustomerInfo:
    active_entitlements: frozenset[str] = field(default_factory=frozenset)
    original_app_user_id: Optional[str] = None


@dataclass(frozen=True)
class BillingPackage:
    identifier: str
    product_id: str
    price: str


class BillingProvider(ABC):
    """Entitlement source of truth. Implementations wrap the store SDK."""

    @abstractmethod
    def login(self, user_id: str) -> CustomerInfo:
        pass

    @abstractmethod
    def logout(self) -> None:
        pass

    @abstractmethod
    def get_customer_info(self) -> CustomerInfo:
        pass

    @abstractmethod
    def list_packages(self) -> list[BillingPackage]:
        pass

    @abstractmethod
    def purchase(self, package_id: str) -> CustomerInfo:
        pass

    @abstractmethod
    def restore(self) -> CustomerInfo:
        pass

    def is_premium_entitlement_active(self, info: CustomerInfo) -> bool:
        return ENTITLEMENT_ID in info.active_entitlements


class NullBillingProvider(BillingProvider):
    """Used when no store SDK is configured: nobody is ever entitled."""

    def login(self, user_id: str) -> CustomerInfo:
        return CustomerInfo(original_app_user_id=user_id)

    def logout(self) -> None:
        return None

    def get_customer_info(self) -> CustomerInfo:
        return CustomerInfo()

    def list_packages(self) -> list[BillingPackage]:
        return []

    def purchase(self, package_id: str) -> CustomerInfo:
        raise RuntimeError("Purchases are not available without a billing provider")

    def restore(self) -> CustomerInfo:
        return CustomerInfo()
