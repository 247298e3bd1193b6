"""
Clerk: account security and authorization engine.

Credential checks with progressive lockout and geo-anomaly detection, a
two-tier (Redis + PostgreSQL) account cache with cross-process invalidation,
rank/permission resolution with inheritance and wildcards, and a friend
request state machine.
"""

__version__ = "1.0.0"
