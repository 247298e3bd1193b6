"""
Core infrastructure layer for Clerk.

Subsystems
----------
- config: static (env) and dynamic (YAML) configuration
- logging: structured logging and context propagation
- database: async SQLAlchemy engine, sessions, transactions
- redis: distributed cache and pub/sub
- event: in-process event bus
- services: dependency container

Feature modules import from the concrete submodules; this package performs no
imports of its own.
"""
