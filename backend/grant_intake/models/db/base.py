"""Re-export Base and provide the portable column types used by ORM models."""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

from grant_intake.database import Base

__all__ = ["Base", "JSONDocument"]

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")
