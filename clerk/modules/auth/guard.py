"""
AuthenticationGuard: credential checks with progressive lockout and geo
anomaly detection.

Purpose
-------
Decide whether a login attempt succeeds and persist every consequence of
the decision (failed-attempt counter, lock state, login history, linked
identifiers) atomically.

Flow
----
1. Unknown username -> INVALID_CREDENTIALS.
2. Active lock (permanent, or ``lock_until`` in the future) -> LOCKED.
3. Expired lock -> cleared before evaluating the attempt.
4. Wrong password -> ``failed_attempts += 1``; the 5th / 10th / 15th
   failure locks for 5 minutes / 30 minutes / 1 hour, the 20th and later
   lock permanently.
5. Correct password -> geo check against the stored fingerprint:
   - stored country "Unknown": trusted, the current fingerprint is stored
   - different country: permanent lock, GEO_LOCKED
   - same country, different region, proxy/hosting and not mobile:
     permanent lock, GEO_LOCKED
   - otherwise success: reset counters, record the login

Architecture Notes
------------------
- The whole decision runs in one ``DatabaseService.get_transaction()`` with
  the account row held by SELECT ... FOR UPDATE, so concurrent attempts on
  one username serialize and every increment is counted.
- Lock state is always read from the store, never from the cache.
- The geo lookup is only made once the password matches, so failed attempts
  never reach the geo service.
- Cache warm-up and events happen after commit.

Configuration Keys
------------------
- auth.lockout.thresholds       : list of {attempts, duration}
- auth.lockout.permanent_after  : int (default 20)
- auth.login_history.max_entries: int (default 10)
- auth.login_history.max_age_days: int (default 7)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple

from clerk.core.config.manager import ConfigManager
from clerk.core.database.service import DatabaseService
from clerk.core.exceptions import TransientStoreError
from clerk.core.logging.logger import LogContext, get_logger
from clerk.modules.accounts.codec import decode_logins, encode_logins
from clerk.modules.accounts.repository import AccountRepository
from clerk.modules.accounts.types import GeoInfo, LoginRecord
from clerk.modules.shared import events
from clerk.modules.shared.base_service import BaseService
from clerk.modules.shared.constants import (
    LOCKOUT_THRESHOLDS,
    LOGIN_HISTORY_MAX_AGE_DAYS,
    LOGIN_HISTORY_MAX_ENTRIES,
    PERMANENT_LOCK_THRESHOLD,
    PLATFORM_JAVA,
    UNKNOWN_GEO,
)
from clerk.modules.shared.durations import humanize, parse_duration
from clerk.modules.shared.exceptions import (
    ClerkDomainException,
    LockedError,
    SecurityError,
)
from clerk.modules.shared.timeutil import utc_now

from .passwords import PasswordHasher

if TYPE_CHECKING:
    from logging import Logger

    from clerk.core.event.bus import EventBus
    from clerk.database.models import Account
    from clerk.modules.cache.coordinator import CacheCoordinator

    from .geo import GeoLookup


INVALID_CREDENTIALS_MESSAGE = "Invalid username or password."


class LoginStatus(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"
    GEO_LOCKED = "geo_locked"


@dataclass
class LoginResult:
    status: LoginStatus
    username: Optional[str] = None
    message: str = ""
    error: Optional[ClerkDomainException] = None
    remaining_attempts: Optional[int] = None
    lock_until: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status is LoginStatus.SUCCESS


def prune_login_history(
    records: List[LoginRecord],
    now: datetime,
    max_entries: int = LOGIN_HISTORY_MAX_ENTRIES,
    max_age: timedelta = timedelta(days=LOGIN_HISTORY_MAX_AGE_DAYS),
) -> List[LoginRecord]:
    """
    Drop records older than ``max_age`` and keep the newest
    ``max_entries - 1`` so that appending one more stays within bounds.
    Order is oldest first.
    """
    recent = sorted((r for r in records if now - r.date <= max_age), key=lambda r: r.date)
    keep = max(max_entries - 1, 0)
    return recent[-keep:] if keep else []


def append_unique(values: Any, item: Optional[str]) -> List[str]:
    current = [str(v) for v in values] if isinstance(values, list) else []
    if item and item not in current:
        current.append(item)
    return current


class AuthenticationGuard(BaseService):
    """Verifies credentials and owns all writes to lockout state."""

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
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(config_manager, event_bus, logger or get_logger(__name__))
        self._cache = cache
        self._geo = geo
        self._db = database
        self._repo = repository or AccountRepository()
        self._hasher = hasher or PasswordHasher(int(self.get_config("auth.bcrypt_rounds", 12)))
        self._clock = clock

        self.thresholds = self._load_thresholds()
        self.permanent_after = int(
            self.get_config("auth.lockout.permanent_after", PERMANENT_LOCK_THRESHOLD)
        )
        self.history_max_entries = int(
            self.get_config("auth.login_history.max_entries", LOGIN_HISTORY_MAX_ENTRIES)
        )
        self.history_max_age = timedelta(
            days=int(self.get_config("auth.login_history.max_age_days", LOGIN_HISTORY_MAX_AGE_DAYS))
        )

    def _load_thresholds(self) -> List[Tuple[int, timedelta]]:
        configured = self.get_config("auth.lockout.thresholds")
        thresholds: List[Tuple[int, timedelta]] = []
        if isinstance(configured, list):
            for entry in configured:
                if not isinstance(entry, dict):
                    continue
                duration = parse_duration(str(entry.get("duration", "")))
                attempts = entry.get("attempts")
                if duration is not None and isinstance(attempts, int):
                    thresholds.append((attempts, duration))
        if not thresholds:
            thresholds = [(n, timedelta(seconds=s)) for n, s in LOCKOUT_THRESHOLDS]
        return sorted(thresholds)

    @property
    def first_threshold(self) -> int:
        return self.thresholds[0][0]

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    async def verify_credentials(
        self,
        username: str,
        password: str,
        ip: str,
        *,
        stable_id: Optional[str] = None,
        platform: str = PLATFORM_JAVA,
    ) -> LoginResult:
        """
        Evaluate one login attempt.

        Outcomes are returned, never raised; only store-tier infrastructure
        errors propagate.
        """
        start = time.perf_counter()
        with LogContext(username=username, platform=platform, operation="verify_credentials"):
            async with self._db.get_transaction() as session:
                account = await self._repo.get_by_username(session, username, for_update=True)
                if account is None:
                    result = LoginResult(
                        LoginStatus.INVALID_CREDENTIALS, message=INVALID_CREDENTIALS_MESSAGE
                    )
                else:
                    result = await self._evaluate(account, password, ip, stable_id, platform)

        await self._after_commit(result, ip, time.perf_counter() - start)
        return result

    # ========================================================================
    # DECISION
    # ========================================================================

    async def _evaluate(
        self,
        account: Account,
        password: str,
        ip: str,
        stable_id: Optional[str],
        platform: str,
    ) -> LoginResult:
        now = self._clock()

        if account.locked:
            if account.lock_until is None or now < account.lock_until:
                error = LockedError(account.lock_reason, account.lock_until)
                return LoginResult(
                    LoginStatus.LOCKED,
                    username=account.username,
                    message=error.message,
                    error=error,
                    lock_until=account.lock_until,
                )
            account.locked = False
            account.lock_until = None
            account.lock_reason = ""

        if not await self._hasher.verify(password, account.password):
            return self._register_failure(account, now)

        geo = await self._lookup_geo(ip)
        anomaly = self._geo_anomaly(account, geo)
        if anomaly is not None:
            account.locked = True
            account.lock_until = None
            account.lock_reason = anomaly
            error = SecurityError(anomaly, country=geo.country, region=geo.region)
            return LoginResult(
                LoginStatus.GEO_LOCKED,
                username=account.username,
                message=error.message,
                error=error,
            )

        self._record_success(account, ip, stable_id, platform, geo, now)
        return LoginResult(LoginStatus.SUCCESS, username=account.username, message="Login successful.")

    def _register_failure(self, account: Account, now: datetime) -> LoginResult:
        account.failed_attempts = (account.failed_attempts or 0) + 1
        attempts = account.failed_attempts

        if attempts >= self.permanent_after:
            reason = (
                f"Too many failed login attempts ({self.permanent_after}+). "
                "Account permanently locked."
            )
            return self._lock(account, reason, None)

        for threshold, duration in self.thresholds:
            if attempts == threshold:
                reason = (
                    f"Too many failed login attempts ({attempts}). "
                    f"Account locked for {humanize(duration)}."
                )
                return self._lock(account, reason, now + duration)

        if attempts < self.first_threshold:
            remaining = self.first_threshold - attempts
            return LoginResult(
                LoginStatus.INVALID_CREDENTIALS,
                username=account.username,
                message=(
                    f"Invalid password. You have {remaining} more attempts "
                    "before temporary lockout."
                ),
                remaining_attempts=remaining,
            )

        return LoginResult(
            LoginStatus.INVALID_CREDENTIALS,
            username=account.username,
            message="Invalid password.",
        )

    @staticmethod
    def _lock(account: Account, reason: str, until: Optional[datetime]) -> LoginResult:
        account.locked = True
        account.lock_until = until
        account.lock_reason = reason
        error = LockedError(reason, until)
        return LoginResult(
            LoginStatus.LOCKED,
            username=account.username,
            message=reason,
            error=error,
            lock_until=until,
        )

    async def _lookup_geo(self, ip: str) -> GeoInfo:
        try:
            return await self._geo.lookup(ip)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log_error("geo_lookup", exc)
            return GeoInfo.unknown()

    @staticmethod
    def _geo_anomaly(account: Account, geo: GeoInfo) -> Optional[str]:
        stored_country = account.country or UNKNOWN_GEO
        stored_region = account.region or UNKNOWN_GEO

        if stored_country == UNKNOWN_GEO or not geo.country_known:
            return None
        if stored_country != geo.country:
            return f"Suspicious login: Different country ({stored_country} vs {geo.country})"
        if (
            stored_region != UNKNOWN_GEO
            and geo.region_known
            and stored_region != geo.region
            and (geo.is_proxy or geo.is_hosting)
            and not geo.is_mobile
        ):
            return "Suspicious login: Different region using proxy/hosting"
        return None

    def _record_success(
        self,
        account: Account,
        ip: str,
        stable_id: Optional[str],
        platform: str,
        geo: GeoInfo,
        now: datetime,
    ) -> None:
        account.failed_attempts = 0
        account.locked = False
        account.lock_until = None
        account.lock_reason = ""

        if (account.country or UNKNOWN_GEO) == UNKNOWN_GEO and geo.country_known:
            account.country = geo.country
            account.region = geo.region

        history = prune_login_history(
            decode_logins(account.logins), now, self.history_max_entries, self.history_max_age
        )
        history.append(
            LoginRecord(
                id=stable_id or "",
                platform=platform,
                ip_address=ip,
                date=now,
                country=geo.country,
                region=geo.region,
            )
        )
        account.logins = encode_logins(history)
        account.logged_out = False
        account.uuids = append_unique(account.uuids, stable_id)
        account.ip_address = append_unique(account.ip_address, ip)

    # ========================================================================
    # POST-COMMIT
    # ========================================================================

    async def _after_commit(self, result: LoginResult, ip: str, elapsed: float) -> None:
        latency_ms = round(elapsed * 1000, 2)
        payload = {"username": result.username, "ip": ip}

        if result.status is LoginStatus.SUCCESS:
            try:
                await self._cache.warm(result.username)
            except TransientStoreError as exc:
                self.log_error("warm_cache", exc, username=result.username)
            self.log.info(
                "Login succeeded",
                extra={"username": result.username, "latency_ms": latency_ms},
            )
            await self.emit_event(events.ACCOUNT_LOGIN, payload)
        elif result.status is LoginStatus.GEO_LOCKED:
            self.log.warning(
                "Account locked after geo anomaly",
                extra={"username": result.username, "reason": result.error.message if result.error else ""},
            )
            await self.emit_event(
                events.ACCOUNT_GEO_LOCKED,
                {**payload, "reason": getattr(result.error, "reason", "")},
            )
        elif result.status is LoginStatus.LOCKED and result.username is not None:
            self.log.warning(
                "Login refused: account locked",
                extra={"username": result.username, "lock_until": result.lock_until},
            )
            await self.emit_event(
                events.ACCOUNT_LOCKED,
                {**payload, "reason": getattr(result.error, "reason", ""), "until": result.lock_until},
            )
        else:
            self.log.info(
                "Login failed",
                extra={"username": result.username, "latency_ms": latency_ms},
            )
            await self.emit_event(events.ACCOUNT_LOGIN_FAILED, payload)
