"""
User domain service.
- sign_up(store, user_id, email): create the record (inactive, default targets)
- get_user(store, user_id)
- update_targets(store, user_id, targets)
"""

from datetime import datetime, timezone
from typing import Optional

from nutritrack.core.logging import log_event
from nutritrack.features.users.store import UserStore
from nutritrack.models.user import MacroTargets, UserRecord


def sign_up(store: UserStore, user_id: str, email: Optional[str] = None, now: Optional[datetime] = None) -> tuple[UserRecord, bool]:
    """Idempotent: a second call returns the existing record untouched."""
    now = now or datetime.now(timezone.utc)
    record, created = store.create_user(user_id, email, now)
    if created:
        log_event("info", "user.created", user_id=user_id)
    return record, created


def get_user(store: UserStore, user_id: str) -> UserRecord:
    return store.require_user(user_id)


def update_targets(store: UserStore, user_id: str, targets: MacroTargets, now: Optional[datetime] = None) -> UserRecord:
    record = store.update_targets(user_id, targets, now or datetime.now(timezone.utc))
    log_event("info", "user.targets_updated", user_id=user_id, extra=targets.model_dump())
    return record
