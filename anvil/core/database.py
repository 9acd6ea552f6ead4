"""Database models and schema for the Anvil reconciliation journal."""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()
logger = logging.getLogger(__name__)


class WorkspaceRecord(Base):
    """One lifetime of an agent workspace, from create to destroy."""

    __tablename__ = "workspaces"

    id = Column(String, primary_key=True)
    agent_id = Column(String, nullable=False, index=True)
    branch_name = Column(String, nullable=False)
    worktree_path = Column(Text, nullable=False)
    base_commit_sha = Column(String)
    status = Column(
        String,
        CheckConstraint("status IN ('active', 'destroyed')"),
        default="active",
        nullable=False,
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    destroyed_at = Column(DateTime)


class ReconciliationRecord(Base):
    """A merge or sync attempt. Written as 'started' before git runs."""

    __tablename__ = "reconciliations"

    id = Column(String, primary_key=True)
    agent_id = Column(String, nullable=False, index=True)
    operation = Column(
        String,
        CheckConstraint("operation IN ('merge', 'sync')"),
        nullable=False,
    )
    status = Column(
        String,
        CheckConstraint(
            "status IN ('started', 'merged', 'noop', 'synced', 'conflict', 'failed', 'interrupted')"
        ),
        default="started",
        nullable=False,
    )
    commits_merged = Column(Integer, default=0)
    conflicting_paths = Column(JSON)
    message = Column(Text)
    trunk_tip_before = Column(String)
    merge_commit_sha = Column(String)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime)


class MergeQueueEntry(Base):
    """A workspace waiting for its turn to merge into the trunk."""

    __tablename__ = "merge_queue"

    id = Column(String, primary_key=True)
    agent_id = Column(String, unique=True, nullable=False)
    status = Column(
        String,
        CheckConstraint(
            "status IN ('queued', 'syncing', 'merging', 'merged', 'conflict', 'failed')"
        ),
        default="queued",
        nullable=False,
    )
    position = Column(Integer, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    conflicting_paths = Column(JSON)
    enqueued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    merged_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class DatabaseManager:
    """Manager for database operations."""

    def __init__(self, database_path: str = ":memory:"):
        """Initialize database connection."""
        self.database_path = database_path
        self.engine = create_engine(
            f"sqlite:///{database_path}",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Journal tables ready in {self.database_path}")

    def get_session(self):
        """Get a database session."""
        return self.SessionLocal()

    def drop_tables(self):
        """Drop all database tables (for testing)."""
        Base.metadata.drop_all(bind=self.engine)


@contextmanager
def get_db(db_manager: Optional[DatabaseManager] = None, database_path: str = ":memory:"):
    """Provide a transactional scope around a series of operations."""
    if db_manager is None:
        db_manager = DatabaseManager(database_path)
        db_manager.create_tables()
    db = db_manager.get_session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
