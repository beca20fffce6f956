"""
SQLAlchemy models for the recruitment list schema.

All tables are created in the configured schema (``DB_SCHEMA``, default
``recruitment_list``) to isolate them from other services sharing the database.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Text, BigInteger, DateTime, JSON,
    ForeignKey, Index, UniqueConstraint, create_engine, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import QueuePool

from recruitment_api.config import settings

logger = logging.getLogger(__name__)


# Schema name for all tables
SCHEMA_NAME = settings.db_schema

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


LIST_FK = f"{SCHEMA_NAME}.recruitment_lists.id"


class RecruitmentListRecord(Base):
    """Recruitment list configuration; the full document lives in ``config``."""

    __tablename__ = "recruitment_lists"
    __table_args__ = {"schema": SCHEMA_NAME}

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    study_key = Column(String(255), nullable=False, index=True)
    inclusion_type = Column(String(20), nullable=False)  # manual, auto
    config = Column(JSONType, nullable=False)  # camelCase RecruitmentList document
    tags = Column(JSONType, default=list)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ParticipantRecord(Base):
    """List-scoped membership of a study participant."""

    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("participant_id", "recruitment_list_id", name="uq_participants_participant_list"),
        Index("ix_participants_list_included", "recruitment_list_id", "included_at"),
        {"schema": SCHEMA_NAME}
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    participant_id = Column(String(255), nullable=False)
    recruitment_list_id = Column(String(36), ForeignKey(LIST_FK, ondelete="CASCADE"), nullable=False)
    included_at = Column(DateTime, default=datetime.utcnow)
    included_by = Column(String(255), nullable=True)  # "auto" or the importing user
    deleted_at = Column(DateTime, nullable=True)
    recruitment_status = Column(String(100), default="")
    infos = Column(JSONType, default=dict)


class ParticipantNoteRecord(Base):
    """Free-text note on a membership; system notes record soft deletions."""

    __tablename__ = "participant_notes"
    __table_args__ = (
        Index("ix_participant_notes_list_participant", "recruitment_list_id", "participant_record_id"),
        {"schema": SCHEMA_NAME}
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    participant_record_id = Column(String(36), nullable=False)
    recruitment_list_id = Column(String(36), ForeignKey(LIST_FK, ondelete="CASCADE"), nullable=False)
    note = Column(Text, nullable=False)
    created_by_id = Column(String(255), nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ResearchDataRecord(Base):
    """One flattened survey response of a member."""

    __tablename__ = "research_data"
    __table_args__ = (
        UniqueConstraint(
            "participant_id", "response_id", "recruitment_list_id",
            name="uq_research_data_participant_response_list",
        ),
        Index("ix_research_data_list_survey", "recruitment_list_id", "survey_key", "arrived_at"),
        {"schema": SCHEMA_NAME}
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    response_id = Column(String(255), nullable=False)
    participant_id = Column(String(255), nullable=False)
    recruitment_list_id = Column(String(36), ForeignKey(LIST_FK, ondelete="CASCADE"), nullable=False)
    survey_key = Column(String(255), nullable=False)
    arrived_at = Column(BigInteger, nullable=False)  # epoch seconds
    response = Column(JSONType, nullable=False)


class SyncInfoRecord(Base):
    """Sync state of a list, one row per list."""

    __tablename__ = "sync_infos"
    __table_args__ = (
        UniqueConstraint("recruitment_list_id", name="uq_sync_infos_list"),
        {"schema": SCHEMA_NAME}
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    recruitment_list_id = Column(String(36), ForeignKey(LIST_FK, ondelete="CASCADE"), nullable=False)
    participant_sync_status = Column(String(20), default="")  # idle, running
    participant_sync_started_at = Column(DateTime, nullable=True)
    data_sync_status = Column(String(20), default="")
    data_sync_started_at = Column(DateTime, nullable=True)


class PermissionRecord(Base):
    """Capability grant of a management user."""

    __tablename__ = "permissions"
    __table_args__ = (
        Index("ix_permissions_user_action", "user_id", "action"),
        {"schema": SCHEMA_NAME}
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(255), nullable=False)
    resource_id = Column(String(255), nullable=False, default="", index=True)
    action = Column(String(100), nullable=False)
    limiter = Column(JSONType, default=list)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# Database engine and session
_engine = None
_SessionLocal = None


def get_engine():
    """Get or create database engine with connection health checks."""
    global _engine
    if _engine is None:
        connect_args = {}
        if settings.database_url.startswith("postgresql"):
            connect_args = {
                "keepalives": 1,
                "keepalives_idle": 30,
                "keepalives_interval": 10,
                "keepalives_count": 5,
            }
        _engine = create_engine(
            settings.database_url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=300,
            pool_pre_ping=True,  # Test connection before using (auto-reconnect)
            echo=settings.debug,
            connect_args=connect_args,
        )
    return _engine


def get_session_factory():
    """Get or create session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine()
        )
    return _SessionLocal


def get_db() -> Session:
    """Get database session (dependency injection)."""
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_schema():
    """Initialize database schema (create tables if not exist)."""
    engine = get_engine()

    with engine.connect() as conn:
        conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {SCHEMA_NAME}"))
        conn.commit()

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database schema '{SCHEMA_NAME}' initialized")

