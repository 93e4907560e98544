"""
Storage models for versioned FHIR resources.

- ``ResourceRecord`` holds the current version pointer of every resource.
- ``ResourceVersion`` is the append-only history; every version, including
  delete tombstones, gets exactly one row.
- ``AuditLog`` is the compliance trail, one row per mutation.

Resource bodies are PHI and are stored Fernet-encrypted in ``encrypted_body``.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from fhir_server.models.database import Base

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Current version – one row per (resource_type, resource_id)
# ---------------------------------------------------------------------------
class ResourceRecord(Base):
    __tablename__ = "resources"

    resource_type = Column(String(64), primary_key=True)
    resource_id = Column(String(64), primary_key=True)
    version_id = Column(Integer, nullable=False)
    last_updated = Column(DateTime(timezone=True), nullable=False)
    deleted = Column(Boolean, default=False, nullable=False)
    encrypted_body = Column(Text, nullable=True, comment="Fernet-encrypted FHIR JSON")

    __table_args__ = (Index("ix_resources_type_deleted", "resource_type", "deleted"),)


# ---------------------------------------------------------------------------
# Version history – never updated in place
# ---------------------------------------------------------------------------
class ResourceVersion(Base):
    __tablename__ = "resource_versions"

    resource_type = Column(String(64), primary_key=True)
    resource_id = Column(String(64), primary_key=True)
    version_id = Column(Integer, primary_key=True)
    last_updated = Column(DateTime(timezone=True), nullable=False)
    deleted = Column(Boolean, default=False, nullable=False, comment="Delete tombstone")
    encrypted_body = Column(Text, nullable=True)


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False, comment="create | update | delete")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(64), nullable=False)
    version_id = Column(Integer, nullable=True)
    detail = Column(JSONVariant, comment="Context for the action")
    timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
