"""Packaged Alembic migrations for the keybound schema."""
