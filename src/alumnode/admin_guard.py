"""Access gate for admin-only views.

The guard combines the role claim cached in the session with a fresh read of
the user's row. The row wins whenever it answers. When the read itself fails
(transport error or timeout) the outcome depends on ``fail_open``: trust the
cached claim (the default) or deny.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .errors import TransportFailure
from .models import ADMIN_ROLES
from .sessions import Session
from .users import UserDirectory

logger = logging.getLogger(__name__)

CHECKING = "checking"
UNAUTHORIZED = "unauthorized"
AUTHORIZED = "authorized"

ADMIN_LOGIN_PATH = "/admin/login"


@dataclass(frozen=True)
class GuardDecision:
    state: str
    redirect_to: str | None = None
    redirect_after_s: float = 0.0
    reason: str = ""

    @property
    def authorized(self) -> bool:
        return self.state == AUTHORIZED


class AdminAuthGuard:
    """One guard per protected view; only one check runs at a time."""

    def __init__(
        self,
        users: UserDirectory,
        *,
        fail_open: bool = True,
        verify_timeout_s: float = 5.0,
        redirect_delay_s: float = 1.5,
        login_path: str = ADMIN_LOGIN_PATH,
    ) -> None:
        self._users = users
        self.fail_open = fail_open
        self._verify_timeout_s = verify_timeout_s
        self._redirect_delay_s = redirect_delay_s
        self._login_path = login_path
        self._decision = GuardDecision(state=CHECKING)
        self._in_flight = False
        self._checked = False
        self._checked_user: str | None = None

    @property
    def state(self) -> str:
        return self._decision.state

    @property
    def decision(self) -> GuardDecision:
        return self._decision

    async def check(self, session: Session | None) -> GuardDecision:
        if self._in_flight:
            return GuardDecision(state=CHECKING, reason="check already in flight")
        if session is None:
            return self._settle(UNAUTHORIZED, "not authenticated", user_id=None, force_redirect=True)
        if self._checked and self._checked_user == session.user_id and self._decision.authorized:
            return self._decision

        self._in_flight = True
        self._decision = GuardDecision(state=CHECKING)
        try:
            if session.role not in ADMIN_ROLES:
                logger.info("admin access denied for %s: role %s", session.user_id, session.role)
                return self._settle(
                    UNAUTHORIZED,
                    "not an admin",
                    redirect_after_s=self._redirect_delay_s,
                    user_id=session.user_id,
                )
            return await self._verify(session)
        finally:
            self._in_flight = False

    async def _verify(self, session: Session) -> GuardDecision:
        try:
            user = await asyncio.wait_for(self._users.find(session.user_id), self._verify_timeout_s)
        except (TransportFailure, asyncio.TimeoutError):
            if self.fail_open:
                logger.warning(
                    "admin verification failed for %s; trusting cached role %s",
                    session.user_id,
                    session.role,
                    exc_info=True,
                )
                return self._settle(AUTHORIZED, "verification failed, cached role trusted", user_id=session.user_id)
            logger.warning("admin verification failed for %s; denying", session.user_id, exc_info=True)
            return self._settle(
                UNAUTHORIZED,
                "verification failed",
                redirect_after_s=self._redirect_delay_s,
                user_id=session.user_id,
            )

        if user is None or not user.is_active:
            reason = "user not found" if user is None else "user deactivated"
        elif user.role in ADMIN_ROLES:
            return self._settle(AUTHORIZED, "verified", user_id=session.user_id)
        else:
            reason = f"store role is {user.role}"
        logger.info("admin access denied for %s: %s", session.user_id, reason)
        return self._settle(UNAUTHORIZED, reason, redirect_after_s=self._redirect_delay_s, user_id=session.user_id)

    def _settle(
        self,
        state: str,
        reason: str,
        *,
        user_id: str | None,
        redirect_after_s: float = 0.0,
        force_redirect: bool = False,
    ) -> GuardDecision:
        redirect_to = None
        if state == UNAUTHORIZED:
            # A repeated denial for the same user does not redirect again.
            if force_redirect or not self._checked or self._checked_user != user_id:
                redirect_to = self._login_path
        self._checked = True
        self._checked_user = user_id
        self._decision = GuardDecision(
            state=state,
            redirect_to=redirect_to,
            redirect_after_s=redirect_after_s if redirect_to else 0.0,
            reason=reason,
        )
        return self._decision
