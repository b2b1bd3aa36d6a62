from __future__ import annotations

import os

from sqlalchemy import Column, DateTime, JSON, String, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()
IS_PG = os.getenv("DB_URL", "").startswith("postgres")

# JSON column: JSONB on PG, JSON on SQLite
if IS_PG:
    from sqlalchemy.dialects.postgresql import JSONB as JSONType
else:
    JSONType = JSON


class KVEntry(Base):
    """Namespaced JSON document (cache entries, checkpoints)."""

    __tablename__ = "agent_kv"

    namespace = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    value = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
