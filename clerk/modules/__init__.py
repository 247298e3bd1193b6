"""
Clerk domain modules.

- accounts: account records, registration, settings, alt lookup
- auth: credential verification, lockout, geo anomaly detection
- cache: Redis projection coordination and invalidation
- ranks: rank administration and permission resolution
- friends: friend request state machine
- sync: periodic cache-to-store reconciliation
- session: per-connection authentication state
- shared: base classes, exceptions, validators, durations
"""
