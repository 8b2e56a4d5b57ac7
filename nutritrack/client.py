"""
Client-side subscription context and route gating.

SubscriptionGate is what the web client keeps per signed-in session: it asks
the backend to reconcile on session start and on later navigations, and
decides whether a path may render. Status starts unknown; while unknown,
protected paths stay pending so paid content never flashes before the
status resolves.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from nutritrack.models.user import SubscriptionStatus

logger = logging.getLogger("nutritrack")

RECONCILE_PATH = "/api/subscription/reconcile"

AUTH_PATH = "/auth"
SUBSCRIBE_PATH = "/subscribe"
DASHBOARD_PATH = "/dashboard"
PROTECTED_PREFIXES = (DASHBOARD_PATH,)


class Access(str, Enum):
    ALLOW = "allow"
    PENDING = "pending"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class AccessDecision:
    access: Access
    redirect_to: Optional[str] = None


def is_protected(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in PROTECTED_PREFIXES)


class SubscriptionGate:
    """
    Per-session subscription state: unknown -> active | inactive.

    `http` is any httpx.Client pointed at the backend (a FastAPI TestClient
    works too).
    """

    def __init__(self, http: httpx.Client):
        self.http = http
        self.user_id: Optional[str] = None
        self.status: Optional[SubscriptionStatus] = None
        self.last_outcome: Optional[str] = None

    def start_session(self, user_id: str, *, sign_in: bool = False, checkout_success: bool = False) -> Optional[SubscriptionStatus]:
        """
        Begin a session for user_id and resolve its status.

        sign_in and checkout_success force a provider check, so a status
        changed while the user was away (or just paid) is picked up at once.
        """
        self.user_id = user_id
        self.status = None
        return self._reconcile(session_start=True, force=sign_in or checkout_success)

    def refresh(self) -> Optional[SubscriptionStatus]:
        """Re-check on navigation; the backend enforces the cooldown."""
        if self.user_id is None:
            return None
        return self._reconcile(session_start=False, force=False)

    def end_session(self) -> None:
        self.user_id = None
        self.status = None
        self.last_outcome = None

    def _reconcile(self, *, session_start: bool, force: bool) -> SubscriptionStatus:
        try:
            response = self.http.post(
                RECONCILE_PATH,
                json={"userId": self.user_id, "sessionStart": session_start, "force": force},
            )
            response.raise_for_status()
            body = response.json()
            self.status = SubscriptionStatus(body["subscriptionStatus"])
            self.last_outcome = body.get("outcome")
        except (httpx.HTTPError, KeyError, ValueError) as e:
            # Unresolvable status must never grant access
            logger.warning("subscription.reconcile_failed", extra={"user_id": self.user_id, "reason": str(e)})
            self.status = SubscriptionStatus.INACTIVE
            self.last_outcome = "error"
        return self.status

    def decide(self, path: str) -> AccessDecision:
        if self.user_id is None:
            if is_protected(path) or path == SUBSCRIBE_PATH:
                return AccessDecision(Access.REDIRECT, AUTH_PATH)
            return AccessDecision(Access.ALLOW)

        if self.status is None:
            return AccessDecision(Access.PENDING)

        active = self.status == SubscriptionStatus.ACTIVE
        if is_protected(path) and not active:
            return AccessDecision(Access.REDIRECT, SUBSCRIBE_PATH)
        if path == SUBSCRIBE_PATH and active:
            return AccessDecision(Access.REDIRECT, DASHBOARD_PATH)
        return AccessDecision(Access.ALLOW)
