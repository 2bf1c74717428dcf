"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging
    errors          — exception hierarchy & handlers
    health          — health check aggregation
    database        — async engine, declarative base, lifecycle
    tables          — table definitions
    store           — parameter-bound persistence facade
    middleware      — request logging
"""
