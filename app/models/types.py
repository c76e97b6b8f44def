"""Shared column types."""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# Native JSONB on PostgreSQL, plain JSON on SQLite (tests, local runs)
JSONType = JSONB().with_variant(JSON(), "sqlite")
