from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.security import verify_access_token
from core.exceptions import credentials_exception, forbidden_exception
from database import DocumentStore, get_store
from models.common import UserRole
from services.billing_service import PaymentSynchronizer
from services.delivery_service import DeliveryLifecycleCoordinator
from services.notification_service import NotificationService
from services.payment_service import PayMongoGateway

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    """Identity comes from the token claims: `sub` is the user id, `role` its role."""
    if not credentials:
        raise credentials_exception()
    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise credentials_exception()

    user_id = payload.get("sub")
    role = payload.get("role")
    if not user_id or role not in [r.value for r in UserRole]:
        raise credentials_exception()
    return {"user_id": user_id, "role": role, "name": payload.get("name")}


def require_role(*roles: UserRole):
    """
    Checks that the caller holds one of the given roles.
    Usage: Depends(require_role(UserRole.ADMIN, UserRole.OPERATOR))
    """
    async def _check(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") not in [r.value for r in roles]:
            raise forbidden_exception()
        return current_user
    return _check


# Shortcuts
require_admin = require_role(UserRole.ADMIN, UserRole.OPERATOR)
require_driver = require_role(UserRole.DRIVER, UserRole.ADMIN, UserRole.OPERATOR)


def is_staff(user: dict) -> bool:
    return user.get("role") in (UserRole.ADMIN.value, UserRole.OPERATOR.value)


# ── Service providers (overridden in tests) ──────────────────────────────────
def get_document_store() -> DocumentStore:
    return get_store()


def get_gateway() -> PayMongoGateway:
    return PayMongoGateway()


def get_notifier(store: DocumentStore = Depends(get_document_store)) -> NotificationService:
    return NotificationService(store)


def get_billing(
    store: DocumentStore = Depends(get_document_store),
    gateway: PayMongoGateway = Depends(get_gateway),
) -> PaymentSynchronizer:
    return PaymentSynchronizer(store, gateway)


def get_coordinator(
    store: DocumentStore = Depends(get_document_store),
    notifier: NotificationService = Depends(get_notifier),
    billing: PaymentSynchronizer = Depends(get_billing),
) -> DeliveryLifecycleCoordinator:
    return DeliveryLifecycleCoordinator(store, notifier, billing)
