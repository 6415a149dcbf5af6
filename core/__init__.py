"""
Core utilities and configuration for the batch engine.

This package provides foundational components used throughout the engine:

Modules:
    config: Application settings and per-step configuration snapshots
    database: Engine/session factories and dialect-aware upserts
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration

Usage:
    from core.config import settings, StepSettings
    from core.database import build_engine, build_session_factory
    from core.exceptions import WriteError, SkipLimitExceededError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Build a session factory and hand it to the tracker
    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
"""

