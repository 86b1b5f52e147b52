"""
Backend package for the prayer community service.

Provides a FastAPI application over a store abstraction with an in-memory
implementation for development/tests and a SQLAlchemy one for Postgres.
"""
