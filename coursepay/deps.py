"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from coursepay.core.exceptions import ForbiddenError, UnauthorizedError
from coursepay.core.security import load_session_cookie
from coursepay.gateways.base import get_gateway
from coursepay.ledger.base import LedgerStore, get_ledger_store
from coursepay.schemas import UserRecord

SESSION_COOKIE_NAME = "coursepay_session"


def get_store() -> LedgerStore:
    return get_ledger_store()


def get_gateway_factory():
    """Dependency: gateway constructor; overridden in tests."""
    return get_gateway


async def get_current_user(request: Request, store: LedgerStore = Depends(get_store)) -> UserRecord:
    """Dependency: load session from cookie and return the user."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await store.find_user(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    return user


async def require_instructor(user: UserRecord = Depends(get_current_user)) -> UserRecord:
    if user.role not in ("instructor", "admin"):
        raise ForbiddenError("Instructors only")
    return user


async def require_admin(user: UserRecord = Depends(get_current_user)) -> UserRecord:
    """Dependency: require current user to have role admin."""
    if user.role != "admin":
        raise ForbiddenError("Admin only")
    return user
