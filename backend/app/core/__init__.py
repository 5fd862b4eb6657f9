"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    middleware  — request logging
    errors      — exception hierarchy & handlers
    health      — health check aggregation
    database    — async SQLAlchemy engine, sessions, unit-of-work scope
"""
