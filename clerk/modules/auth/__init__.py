"""Credential verification, progressive lockout and geo anomaly detection."""

from .geo import GeoLookup, IpApiGeoLookup
from .guard import AuthenticationGuard, LoginResult, LoginStatus
from .passwords import PasswordHasher, hash_password, verify_password

__all__ = [
    "AuthenticationGuard",
    "GeoLookup",
    "IpApiGeoLookup",
    "LoginResult",
    "LoginStatus",
    "PasswordHasher",
    "hash_password",
    "verify_password",
]
