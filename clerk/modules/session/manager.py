"""
Session Manager
===============

Purpose
-------
Own the per-connection authentication state: who a session is logged in
as, and which multi-step chat flow (registration confirmation, password
reset) it is in the middle of. State lives in one table keyed by session
id; nothing is module-global.

Flows
-----
Registration:
    ``begin_registration(username, password)`` validates and checks
    availability, then ``confirm_registration(password)`` must repeat the
    password. A mismatch abandons the flow. Registering does not log the
    session in.

Password reset (authenticated sessions only):
    ``begin_password_reset`` then ``submit_reset_input`` three times:
    current password (retry on mismatch), new password (retry on weak or
    unchanged), confirmation (a mismatch abandons the flow). Typing
    ``cancel`` at any step aborts. Success logs the session out.

Unauthenticated sessions may only run the commands listed in
``session.unauthenticated_commands`` (default ``login`` and ``register``).

Events Published
----------------
- session.connected    : {session_id, username, auto_login}
- session.disconnected : {session_id, username, stable_id, ip}
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from clerk.core.config.manager import ConfigManager
from clerk.core.logging.logger import LogContext, get_logger
from clerk.modules.auth.guard import LoginResult, LoginStatus
from clerk.modules.shared import events
from clerk.modules.shared.base_service import BaseService
from clerk.modules.shared.constants import PLATFORM_JAVA
from clerk.modules.shared.exceptions import ClerkDomainException, NotFoundError, ValidationError
from clerk.modules.shared.timeutil import utc_now

if TYPE_CHECKING:
    from logging import Logger

    from clerk.core.event.bus import EventBus
    from clerk.modules.accounts.service import AccountService
    from clerk.modules.auth.guard import AuthenticationGuard
    from clerk.modules.cache.coordinator import CacheCoordinator

CANCEL_WORD = "cancel"


class IdentityResolver(Protocol):
    """Maps a transport connection to ``(stable_id, platform)``."""

    async def resolve_identity(self, connection_id: str) -> Tuple[Optional[str], str]:
        ...


class PendingFlow(str, Enum):
    REGISTRATION = "registration"
    RESET_OLD = "reset_old"
    RESET_NEW = "reset_new"
    RESET_CONFIRM = "reset_confirm"

    @property
    def is_reset(self) -> bool:
        return self is not PendingFlow.REGISTRATION


@dataclass
class SessionState:
    session_id: str
    connection_id: str
    ip: str
    stable_id: Optional[str] = None
    platform: str = PLATFORM_JAVA
    authenticated: bool = False
    username: Optional[str] = None
    auto_login: bool = False
    connected_at: Optional[datetime] = None
    flow: Optional[PendingFlow] = None
    # Registration: (username, password). Reset: old then new password.
    flow_data: Dict[str, str] = field(default_factory=dict, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def clear_flow(self) -> None:
        self.flow = None
        self.flow_data = {}

    def sign_in(self, username: str) -> None:
        self.authenticated = True
        self.username = username

    def sign_out(self) -> None:
        self.authenticated = False
        self.username = None
        self.auto_login = False
        self.clear_flow()


@dataclass
class SessionReply:
    """User-facing outcome of a session command or chat input."""

    success: bool
    message: str
    error: Optional[ClerkDomainException] = None
    flow: Optional[PendingFlow] = None

    @classmethod
    def fail(
        cls,
        message: str,
        error: Optional[ClerkDomainException] = None,
        flow: Optional[PendingFlow] = None,
    ) -> "SessionReply":
        return cls(False, message, error, flow)


class SessionManager(BaseService):
    """
    Session table plus the login, registration and reset flows.

    Public Methods
    --------------
    - connect() / disconnect() / get_state()
    - login() / logout() / is_authenticated() / command_allowed()
    - begin_registration() / confirm_registration()
    - begin_password_reset() / submit_reset_input()
    - handle_chat(): routes chat text to whichever flow is pending

    Unknown session ids raise ``NotFoundError``; every other outcome is
    returned in a ``SessionReply`` or ``LoginResult``.
    """

    def __init__(
        self,
        guard: AuthenticationGuard,
        accounts: AccountService,
        cache: CacheCoordinator,
        identity: IdentityResolver,
        event_bus: EventBus,
        logger: Optional[Logger] = None,
        *,
        config_manager: Any = ConfigManager,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(config_manager, event_bus, logger or get_logger(__name__))
        self._guard = guard
        self._accounts = accounts
        self._cache = cache
        self._identity = identity
        self._clock = clock
        self._sessions: Dict[str, SessionState] = {}

        allowed: Iterable[str] = self.get_config("session.unauthenticated_commands", ["login", "register"])
        self.unauthenticated_commands = frozenset(str(c).lower() for c in allowed)

    # ========================================================================
    # SESSION TABLE
    # ========================================================================

    def get_state(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise NotFoundError("Session", session_id)
        return state

    def sessions_for(self, username: str) -> List[SessionState]:
        key = username.lower()
        return [
            state for state in self._sessions.values()
            if state.authenticated and state.username and state.username.lower() == key
        ]

    def __len__(self) -> int:
        return len(self._sessions)

    async def connect(self, session_id: str, connection_id: str, ip: str) -> SessionState:
        """
        Register a new session, resolving its identity and applying the
        auto-login rule.
        """
        stable_id, platform = await self._identity.resolve_identity(connection_id)
        state = SessionState(
            session_id=session_id,
            connection_id=connection_id,
            ip=ip,
            stable_id=stable_id,
            platform=platform or PLATFORM_JAVA,
            connected_at=self._clock(),
        )

        with LogContext(session_id=session_id, operation="connect"):
            username = await self._accounts.auto_login_username(stable_id, ip) if stable_id else None
            if username is not None:
                state.sign_in(username)
                state.auto_login = True
                await self._cache.warm(username)
                self.log.info("Session auto-logged in", extra={"username": username})
            else:
                self.log.debug("Session awaiting login", extra={"platform": state.platform})

        self._sessions[session_id] = state
        await self.emit_event(
            events.SESSION_CONNECTED,
            {"session_id": session_id, "username": state.username, "auto_login": state.auto_login},
        )
        return state

    async def disconnect(self, session_id: str) -> bool:
        """Forget the session and announce it; False if it was unknown."""
        state = self._sessions.pop(session_id, None)
        if state is None:
            return False
        await self.emit_event(
            events.SESSION_DISCONNECTED,
            {
                "session_id": session_id,
                "username": state.username if state.authenticated else None,
                "stable_id": state.stable_id,
                "ip": state.ip,
            },
        )
        return True

    # ========================================================================
    # LOGIN
    # ========================================================================

    def is_authenticated(self, session_id: str) -> bool:
        state = self._sessions.get(session_id)
        return state is not None and state.authenticated

    def command_allowed(self, session_id: str, command: str) -> bool:
        state = self._sessions.get(session_id)
        if state is None:
            return False
        if state.authenticated:
            return True
        parts = command.strip().lstrip("/").split(maxsplit=1)
        return bool(parts) and parts[0].lower() in self.unauthenticated_commands

    async def login(self, session_id: str, username: str, password: str) -> LoginResult:
        state = self._require(session_id)
        if state.authenticated:
            return LoginResult(LoginStatus.SUCCESS, state.username, "You are already logged in.")
        if not username or not password:
            return LoginResult(
                LoginStatus.INVALID_CREDENTIALS,
                username,
                "Usage: /login <username> <password>",
                ValidationError("login", "Username and password are required."),
            )

        async with state.lock:
            result = await self._guard.verify_credentials(
                username, password, state.ip, stable_id=state.stable_id, platform=state.platform
            )
            if result.success:
                state.sign_in(result.username or username)
                state.clear_flow()
        return result

    async def logout(self, session_id: str) -> SessionReply:
        state = self._require(session_id)
        if not state.authenticated or state.username is None:
            return SessionReply.fail("You are not logged in.")
        username = state.username
        await self._accounts.set_logged_out(username, True)
        state.sign_out()
        self.log_operation("logout", username=username, session_id=session_id)
        return SessionReply(True, "You have been logged out.")

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    async def begin_registration(self, session_id: str, username: str, password: str) -> SessionReply:
        state = self._require(session_id)
        if state.authenticated:
            return SessionReply.fail("You are already logged into an account, please log out.")
        if state.flow is PendingFlow.REGISTRATION:
            return SessionReply.fail(
                "You have already started registration. Please type your password in chat to confirm.",
                flow=state.flow,
            )
        if not username or not password:
            return SessionReply.fail("Usage: /register <username> <password>")

        invalid = self._accounts.validate_registration(username, password)
        if invalid is not None:
            return SessionReply.fail(invalid.validation_message, invalid)
        if not await self._accounts.username_available(username):
            return SessionReply.fail("That username is already taken.")

        state.flow = PendingFlow.REGISTRATION
        state.flow_data = {"username": username.strip(), "password": password}
        return SessionReply(
            True, "Please type your password in chat to confirm registration.", flow=state.flow
        )

    async def confirm_registration(self, session_id: str, password: str) -> SessionReply:
        state = self._require(session_id)
        if state.flow is not PendingFlow.REGISTRATION:
            return SessionReply.fail("Registration failed. No registration in progress. Please try again.")

        pending = state.flow_data
        state.clear_flow()
        if password != pending.get("password"):
            return SessionReply.fail("Registration failed. Passwords didn't match. Please try again.")

        async with state.lock:
            result = await self._accounts.register(
                pending["username"],
                password,
                stable_id=state.stable_id,
                platform=state.platform,
                ip=state.ip,
            )
        if not result.success:
            return SessionReply.fail(f"Registration failed: {result.message}", result.error)
        return SessionReply(
            True,
            f"Registration successful! You have created a new account with the username "
            f"'{result.username}'. Now you can use /login with your credentials.",
        )

    # ========================================================================
    # PASSWORD RESET
    # ========================================================================

    async def begin_password_reset(self, session_id: str) -> SessionReply:
        state = self._require(session_id)
        if not state.authenticated:
            return SessionReply.fail("You must be logged in to reset your password.")
        if state.flow is not None and state.flow.is_reset:
            return SessionReply.fail(
                "You are already in the process of resetting your password. Please follow the prompts in chat.",
                flow=state.flow,
            )
        state.flow = PendingFlow.RESET_OLD
        state.flow_data = {}
        return SessionReply(
            True,
            "Please type your current password in chat to begin the reset process. Type 'cancel' to cancel.",
            flow=state.flow,
        )

    async def submit_reset_input(self, session_id: str, text: str) -> SessionReply:
        state = self._require(session_id)
        if state.flow is None or not state.flow.is_reset or state.username is None:
            return SessionReply.fail("No password reset in progress.")

        if text.strip().lower() == CANCEL_WORD:
            state.clear_flow()
            return SessionReply(True, "Password reset cancelled.")

        async with state.lock:
            if state.flow is PendingFlow.RESET_OLD:
                if not await self._accounts.verify_password(state.username, text):
                    return SessionReply.fail(
                        "Your current password is incorrect. Please try again or type 'cancel' to cancel.",
                        flow=state.flow,
                    )
                state.flow_data["old"] = text
                state.flow = PendingFlow.RESET_NEW
                return SessionReply(
                    True, "Please type your new password in chat. Type 'cancel' to cancel.", flow=state.flow
                )

            if state.flow is PendingFlow.RESET_NEW:
                invalid = self._accounts.validate_new_password(state.flow_data["old"], text)
                if invalid is not None:
                    return SessionReply.fail(
                        f"{invalid.validation_message} Please try again.", invalid, flow=state.flow
                    )
                state.flow_data["new"] = text
                state.flow = PendingFlow.RESET_CONFIRM
                return SessionReply(True, "Please type your new password again to confirm.", flow=state.flow)

            old, new = state.flow_data["old"], state.flow_data["new"]
            state.clear_flow()
            if text != new:
                return SessionReply.fail("Passwords don't match. Password reset cancelled.")

            result = await self._accounts.change_password(state.username, old, new)
            if not result.ok:
                return SessionReply.fail(result.message, result.error)
            state.sign_out()
            return SessionReply(
                True,
                "Your password has been changed successfully. "
                "You have been logged out for security reasons.",
            )

    async def handle_chat(self, session_id: str, text: str) -> Optional[SessionReply]:
        """
        Route a chat line to the pending flow. Returns None when no flow is
        pending; callers should still suppress chat from unauthenticated
        sessions.
        """
        state = self._require(session_id)
        if state.flow is PendingFlow.REGISTRATION:
            return await self.confirm_registration(session_id, text)
        if state.flow is not None:
            return await self.submit_reset_input(session_id, text)
        return None
