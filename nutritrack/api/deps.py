"""
Request-scoped access to the collaborators wired by create_app().

Handlers never import a module-level client; the app carries its provider,
store and settings on `app.state` so tests can swap any of them.
"""
from typing import Optional

from fastapi import Request

from nutritrack.core.config import Settings
from nutritrack.core.rate_limit import FixedWindowLimiter
from nutritrack.features.billing.provider import BillingProvider
from nutritrack.features.users.store import UserStore


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> UserStore:
    return request.app.state.store


def get_provider(request: Request) -> Optional[BillingProvider]:
    """None when billing is disabled; services answer 503 in that case."""
    return request.app.state.provider


def get_reconcile_limiter(request: Request) -> FixedWindowLimiter:
    return request.app.state.reconcile_limiter
