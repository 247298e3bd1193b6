"""
Account Service
===============

Purpose
-------
Account lifecycle and per-account data outside the login decision itself:

- registration with username/password validation and geo fingerprinting
- password change, logout flag, auto-lock toggle, admin unlock
- auto-login lookup for a reconnecting (stable id, IP) pair
- alt-account discovery by shared identifiers and IPs
- per-account settings, direct (optionally timed) permissions
- last-seen tracking and formatting

Domain Rules
------------
- Usernames are 3-16 characters of letters, digits, '_', '.', '-', and
  unique case-insensitively.
- Passwords need 6+ characters with an uppercase letter, a lowercase
  letter, and a digit or symbol.
- New accounts hold the Default rank and appear in its member list.
- A password change marks the account logged out, which disables
  auto-login until the next password login.
- Auto-login picks the account most recently logged into from the same
  stable id and IP. With ``auto_lock`` on, it additionally requires a login
  from that id or IP within the last two minutes.

Dependencies
------------
- DatabaseService / AccountRepository: registration and lookups that need
  non-projected columns
- CacheCoordinator: settings, permissions and last-seen writes
- GeoLookup: registration fingerprint
- PasswordHasher: bcrypt
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import IntegrityError

from clerk.core.config.manager import ConfigManager
from clerk.core.database.service import DatabaseService
from clerk.core.exceptions import DatabaseError
from clerk.core.logging.logger import get_logger
from clerk.database.models import Account
from clerk.modules.auth.passwords import PasswordHasher
from clerk.modules.ranks.repository import RankRepository
from clerk.modules.shared import events
from clerk.modules.shared.base_service import BaseService
from clerk.modules.shared.constants import (
    AUTO_LOCK_WINDOW_SECONDS,
    DEFAULT_RANK_NAME,
    PLATFORM_JAVA,
)
from clerk.modules.shared.durations import format_ago, format_ago_short, expiry_from
from clerk.modules.shared.exceptions import ConflictError, NotFoundError, ValidationError
from clerk.modules.shared.timeutil import from_epoch, utc_now
from clerk.modules.shared.validators import (
    validate_duration,
    validate_password,
    validate_username,
)

from .codec import (
    decode_logins,
    decode_permission_grants,
    encode_permission_grants,
    encode_rank_grants,
)
from .repository import AccountRepository
from .types import (
    AccountResult,
    AccountStatus,
    AccountSummary,
    GeoInfo,
    LoginHistoryEntry,
    PermissionGrant,
    PermissionView,
    RankGrant,
    RegistrationResult,
)

if TYPE_CHECKING:
    from logging import Logger

    from clerk.core.event.bus import EventBus
    from clerk.modules.auth.geo import GeoLookup
    from clerk.modules.cache.coordinator import CacheCoordinator


_NEVER = datetime.min.replace(tzinfo=timezone.utc)


def _summary(account: Account) -> AccountSummary:
    return AccountSummary(
        username=account.username,
        platform=account.platform,
        registered_date=account.registered_date,
        uuids=[str(v) for v in (account.uuids or [])],
        ip_address=[str(v) for v in (account.ip_address or [])],
        country=account.country,
        region=account.region,
    )


class AccountService(BaseService):
    """
    Service for account records.

    Public Methods
    --------------
    - register() / username_available() / verify_password() / change_password()
    - set_logged_out() / toggle_auto_lock() / unlock() / login_history()
    - auto_login_username()
    - find_accounts_by_id_or_ip() / find_associated_accounts()
    - get_setting() / update_setting() / toggle_setting()
    - add_permission() / remove_permission() / list_permissions()
    - touch_last_seen() / last_seen() / format_last_seen()
    """

    def __init__(
        self,
        cache: CacheCoordinator,
        geo: GeoLookup,
        event_bus: EventBus,
        logger: Optional[Logger] = None,
        *,
        config_manager: Any = ConfigManager,
        database: Any = DatabaseService,
        repository: Optional[AccountRepository] = None,
        rank_repository: Optional[RankRepository] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(config_manager, event_bus, logger or get_logger(__name__))
        self._cache = cache
        self._geo = geo
        self._db = database
        self._repo = repository or AccountRepository()
        self._ranks = rank_repository or RankRepository()
        self._hasher = hasher or PasswordHasher(int(self.get_config("auth.bcrypt_rounds", 12)))
        self._clock = clock

        self.auto_lock_window = timedelta(
            seconds=int(self.get_config("auth.auto_lock_window_seconds", AUTO_LOCK_WINDOW_SECONDS))
        )
        self.default_rank_name = self.get_config("ranks.default.name", DEFAULT_RANK_NAME)

    # ========================================================================
    # REGISTRATION & CREDENTIALS
    # ========================================================================

    def validate_registration(self, username: str, password: str) -> Optional[ValidationError]:
        """Format checks only; availability is checked by ``register``."""
        try:
            validate_username(
                username,
                int(self.get_config("registration.username_min_length", 3)),
                int(self.get_config("registration.username_max_length", 16)),
            )
            validate_password(password, int(self.get_config("registration.password_min_length", 6)))
        except ValidationError as exc:
            return exc
        return None

    async def username_available(self, username: str) -> bool:
        async with self._db.get_session() as session:
            return not await self._repo.username_taken(session, username)

    async def register(
        self,
        username: str,
        password: str,
        *,
        stable_id: Optional[str] = None,
        platform: str = PLATFORM_JAVA,
        ip: Optional[str] = None,
    ) -> RegistrationResult:
        """
        Create an account holding the Default rank.

        The geo fingerprint captured here is the baseline for later
        anomaly checks.
        """
        invalid = self.validate_registration(username, password)
        if invalid is not None:
            return RegistrationResult(False, message=invalid.validation_message, error=invalid)
        username = username.strip()

        geo = await self._geo.lookup(ip) if ip else None
        password_hash = await self._hasher.hash(password)
        now = self._clock()

        self.log_operation("register", username=username, platform=platform)
        try:
            created = await self._insert_account(username, password_hash, stable_id, platform, ip, geo, now)
        except DatabaseError as exc:
            # A concurrent registration took the name between the check and the insert.
            if not isinstance(exc.original_error, IntegrityError):
                raise
            self.log.info("Registration lost the race for a username", extra={"username": username})
            created = False
        if not created:
            error = ConflictError("username_taken", "That username is already taken.", username=username)
            return RegistrationResult(False, message=error.message, error=error)

        await self._cache.warm(username)
        await self.emit_event(
            events.ACCOUNT_REGISTERED,
            {"username": username, "platform": platform, "ip": ip},
        )
        return RegistrationResult(True, username=username, message="Registration successful.")

    async def _insert_account(
        self,
        username: str,
        password_hash: str,
        stable_id: Optional[str],
        platform: str,
        ip: Optional[str],
        geo: Optional[GeoInfo],
        now: datetime,
    ) -> bool:
        async with self._db.get_transaction() as session:
            if await self._repo.username_taken(session, username):
                return False

            account = Account(
                username=username,
                password=password_hash,
                platform=platform,
                uuids=[stable_id] if stable_id else [],
                ip_address=[ip] if ip else [],
                registered_date=now,
                logins=[],
                logged_out=False,
                auto_lock=False,
                failed_attempts=0,
                lock_until=None,
                lock_reason="",
                locked=False,
                country=geo.country if geo else "Unknown",
                region=geo.region if geo else "Unknown",
                permissions=[],
                ranks=encode_rank_grants([RankGrant(self.default_rank_name)]),
                friends=[],
                incoming_requests=[],
                outgoing_requests=[],
                last_seen=now,
                settings={},
            )
            self._repo.add(session, account)

            rank = await self._ranks.get_by_name(session, self.default_rank_name, for_update=True)
            if rank is not None:
                members = list(rank.users or [])
                if username.lower() not in {m.lower() for m in members}:
                    rank.users = members + [username]
        return True

    async def verify_password(self, username: str, password: str) -> bool:
        async with self._db.get_session() as session:
            account = await self._repo.get_by_username(session, username)
            stored = account.password if account is not None else None
        if stored is None:
            return False
        return await self._hasher.verify(password, stored)

    def validate_new_password(self, old: str, new: str) -> Optional[ValidationError]:
        try:
            validate_password(new, int(self.get_config("registration.password_min_length", 6)))
        except ValidationError as exc:
            return exc
        if old == new:
            return ValidationError("password", "New password must be different from the old password.")
        return None

    async def change_password(self, username: str, old: str, new: str) -> AccountResult:
        invalid = self.validate_new_password(old, new)
        if invalid is not None:
            return AccountResult.failure(AccountStatus.INVALID, invalid)

        new_hash = await self._hasher.hash(new)
        async with self._db.get_transaction() as session:
            account = await self._repo.get_by_username(session, username, for_update=True)
            if account is None:
                return AccountResult.failure(AccountStatus.NOT_FOUND, NotFoundError("Account", username))
            if not await self._hasher.verify(old, account.password):
                return AccountResult.failure(
                    AccountStatus.INVALID,
                    ValidationError("password", "Your current password is incorrect."),
                )
            account.password = new_hash
            account.logged_out = True

        self.log_operation("change_password", username=username)
        await self.emit_event(events.ACCOUNT_PASSWORD_CHANGED, {"username": username})
        return AccountResult.success("Password updated. Please log in again.")

    # ========================================================================
    # FLAGS & LOCKS
    # ========================================================================

    async def set_logged_out(self, username: str, value: bool) -> bool:
        async with self._db.get_transaction() as session:
            account = await self._repo.get_by_username(session, username, for_update=True)
            if account is None:
                return False
            account.logged_out = value
        return True

    async def toggle_auto_lock(self, username: str) -> Optional[bool]:
        """Flip ``auto_lock``; returns the new value, or None for unknown accounts."""
        async with self._db.get_transaction() as session:
            account = await self._repo.get_by_username(session, username, for_update=True)
            if account is None:
                return None
            account.auto_lock = not account.auto_lock
            value = account.auto_lock
        self.log_operation("toggle_auto_lock", username=username, auto_lock=value)
        return value

    async def unlock(self, username: str) -> AccountResult:
        """Administrative clear of any lock, including geo locks."""
        async with self._db.get_transaction() as session:
            account = await self._repo.get_by_username(session, username, for_update=True)
            if account is None:
                return AccountResult.failure(AccountStatus.NOT_FOUND, NotFoundError("Account", username))
            account.locked = False
            account.lock_until = None
            account.lock_reason = ""
            account.failed_attempts = 0
            display = account.username

        await self.emit_event(events.ACCOUNT_UNLOCKED, {"username": display})
        return AccountResult.success(f"{display} has been unlocked.")

    async def login_history(self, username: str, limit: int = 10) -> List[LoginHistoryEntry]:
        """Newest-last login records with "Xd ago" style labels."""
        data = await self._cache.get(username, ["logins"])
        if data is None:
            return []
        now = self._clock()
        records = decode_logins(data.get("logins"))[-limit:] if limit > 0 else []
        return [
            LoginHistoryEntry(record, format_ago_short((now - record.date).total_seconds()))
            for record in records
        ]

    # ========================================================================
    # AUTO-LOGIN & ALT LOOKUP
    # ========================================================================

    async def auto_login_username(self, stable_id: str, ip: str) -> Optional[str]:
        """
        Username to sign a reconnecting client into without a password, or
        None when a password login is required.
        """
        if not stable_id or not ip:
            return None
        async with self._db.get_session() as session:
            candidates = await self._repo.find_auto_login_candidates(session, stable_id, ip)
            snapshot = [(a.username, a.auto_lock, decode_logins(a.logins)) for a in candidates]

        if not snapshot:
            return None

        username, auto_lock, records = max(
            snapshot, key=lambda item: max((r.date for r in item[2]), default=_NEVER)
        )
        if not auto_lock:
            return username

        matching = [r for r in records if r.id == stable_id or r.ip_address == ip]
        if not matching:
            self.log.info("Auto-login refused: auto-lock with no matching login", extra={"username": username})
            return None
        latest = max(r.date for r in matching)
        if self._clock() - latest >= self.auto_lock_window:
            self.log.info("Auto-login refused: auto-lock window elapsed", extra={"username": username})
            return None
        return username

    async def find_accounts_by_id_or_ip(
        self, stable_id: Optional[str], ip: Optional[str]
    ) -> List[AccountSummary]:
        async with self._db.get_session() as session:
            accounts = await self._repo.find_by_id_or_ip(session, stable_id, ip)
            return [_summary(account) for account in accounts]

    async def find_associated_accounts(self, username: str) -> List[AccountSummary]:
        """
        Every account reachable from ``username`` through shared stable ids
        or IPs, transitively.
        """
        found: Dict[str, AccountSummary] = {}
        seen_ids: Set[str] = set()
        seen_ips: Set[str] = set()

        async with self._db.get_session() as session:
            start = await self._repo.get_by_username(session, username)
            if start is None:
                return []
            frontier = [_summary(start)]

            while frontier:
                next_ids: Set[str] = set()
                next_ips: Set[str] = set()
                for summary in frontier:
                    found[summary.username.lower()] = summary
                    next_ids.update(set(summary.uuids) - seen_ids)
                    next_ips.update(set(summary.ip_address) - seen_ips)
                seen_ids |= next_ids
                seen_ips |= next_ips

                frontier = []
                for value in next_ids:
                    for account in await self._repo.find_by_id_or_ip(session, stable_id=value):
                        if account.username.lower() not in found:
                            frontier.append(_summary(account))
                for value in next_ips:
                    for account in await self._repo.find_by_id_or_ip(session, ip=value):
                        if account.username.lower() not in found:
                            frontier.append(_summary(account))
                frontier = list({s.username.lower(): s for s in frontier}.values())

        return sorted(found.values(), key=lambda s: s.username.lower())

    # ========================================================================
    # SETTINGS
    # ========================================================================

    async def get_setting(self, username: str, key: str, default: Any = None) -> Any:
        data = await self._cache.get(username, ["settings"])
        if data is None:
            return default
        return (data.get("settings") or {}).get(key, default)

    async def update_setting(self, username: str, key: str, value: Any) -> bool:
        """Set one setting; ``None`` removes it. False for unknown accounts."""

        def apply(settings: Any) -> Dict[str, Any]:
            current = dict(settings or {})
            if value is None:
                current.pop(key, None)
            else:
                current[key] = value
            return current

        return await self._cache.update(username, "settings", apply) is not None

    async def toggle_setting(self, username: str, key: str) -> Optional[bool]:
        def flip(settings: Any) -> Dict[str, Any]:
            current = dict(settings or {})
            current[key] = not bool(current.get(key, False))
            return current

        settings = await self._cache.update(username, "settings", flip)
        return None if settings is None else bool(settings.get(key))

    # ========================================================================
    # DIRECT PERMISSIONS
    # ========================================================================

    async def add_permission(
        self, username: str, permission: str, duration: Optional[str] = None
    ) -> AccountResult:
        """Grant a permission directly, optionally for ``duration``."""
        permission = (permission or "").strip()
        if not permission:
            return AccountResult.failure(
                AccountStatus.INVALID, ValidationError("permission", "Permission cannot be empty.")
            )
        try:
            duration = validate_duration(duration)
        except ValidationError as exc:
            return AccountResult.failure(AccountStatus.INVALID, exc)

        now = self._clock()
        expires = expiry_from(now, duration) if duration else None
        state: Dict[str, bool] = {}

        def plan(snapshot):
            changes = {}
            for name, values in snapshot.items():
                grants = decode_permission_grants(values["permissions"])
                if any(g.permission == permission and g.is_active(now) for g in grants):
                    state["exists"] = True
                    continue
                kept = [g for g in grants if g.permission != permission]
                changes[name] = {
                    "permissions": encode_permission_grants(kept + [PermissionGrant(permission, expires)])
                }
            return changes

        written = await self._cache.transact([username], ["permissions"], plan)
        if state.get("exists"):
            return AccountResult.failure(
                AccountStatus.CONFLICT,
                ConflictError("permission_exists", f"{username} already has {permission}."),
            )
        if not written:
            return AccountResult.failure(AccountStatus.NOT_FOUND, NotFoundError("Account", username))

        suffix = f" for {duration}" if duration else ""
        return AccountResult.success(f"Granted {permission} to {username}{suffix}.", expires=expires)

    async def remove_permission(self, username: str, permission: str) -> AccountResult:
        state: Dict[str, bool] = {}

        def plan(snapshot):
            changes = {}
            for name, values in snapshot.items():
                state["account"] = True
                grants = decode_permission_grants(values["permissions"])
                kept = [g for g in grants if g.permission != permission]
                if len(kept) != len(grants):
                    changes[name] = {"permissions": encode_permission_grants(kept)}
            return changes

        written = await self._cache.transact([username], ["permissions"], plan)
        if not state.get("account"):
            return AccountResult.failure(AccountStatus.NOT_FOUND, NotFoundError("Account", username))
        if not written:
            return AccountResult.failure(
                AccountStatus.NOT_FOUND, NotFoundError("Permission", f"{username} does not have {permission}")
            )
        return AccountResult.success(f"Removed {permission} from {username}.")

    async def list_permissions(self, username: str) -> List[PermissionView]:
        data = await self._cache.get(username, ["permissions"])
        if data is None:
            return []
        now = self._clock()
        views: List[PermissionView] = []
        for grant in decode_permission_grants(data.get("permissions")):
            if grant.expires is None:
                label = grant.permission
            elif grant.expires <= now:
                label = f"{grant.permission} (expired)"
            else:
                remaining = format_ago((grant.expires - now).total_seconds(), use_ago=False)
                label = f"{grant.permission} (expires in {remaining})"
            views.append(PermissionView(grant.permission, grant.expires, label))
        return views

    # ========================================================================
    # LAST SEEN
    # ========================================================================

    async def touch_last_seen(self, username: str) -> Optional[datetime]:
        now = self._clock()
        value = await self._cache.update(username, "last_seen", lambda _: int(now.timestamp()))
        return from_epoch(value) if value is not None else None

    async def last_seen(self, username: str) -> Optional[datetime]:
        data = await self._cache.get(username, ["last_seen"])
        if data is None:
            return None
        return from_epoch(data.get("last_seen"))

    def format_last_seen(self, moment: Optional[datetime]) -> str:
        if moment is None:
            return "Unknown"
        return format_ago((self._clock() - moment).total_seconds())
