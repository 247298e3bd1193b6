"""
Clerk Test Suite
================

Test Organization
-----------------
- tests/unit/        : services over in-memory doubles (no external dependencies)
- tests/integration/ : testcontainers PostgreSQL and Redis
- tests/fakes.py     : the in-memory doubles and record factories

Run only the fast suite with ``pytest -m "not integration"``.
"""
