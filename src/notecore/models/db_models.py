"""SQLAlchemy database models for notecore."""
import datetime
from typing import Optional

from sqlalchemy import (Boolean, CheckConstraint, Column, DateTime, Float,
                        ForeignKey, Index, Integer, String, Table, Text,
                        UniqueConstraint, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from notecore.config import config


def _utcnow() -> datetime.datetime:
    # Stored timestamps are naive UTC
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for tags and notes
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column(
        "note_id",
        String(36),
        ForeignKey("notes.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        String(36),
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tagged_at", DateTime, default=_utcnow, nullable=False),
    Column("auto_tagged", Boolean, default=False, nullable=False),
    Index("ix_note_tags_tag_id", "tag_id"),
)


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(36), primary_key=True)
    owner_id = Column(String(255), nullable=False)
    title = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    language_code = Column(String(16), default="und", nullable=False)
    language_confidence = Column(Float, default=0.0, nullable=False)
    analyzer = Column(String(32), default="simple", nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    tags = relationship("DBTag", secondary=note_tags, back_populates="notes")
    terms = relationship(
        "DBSearchTerm", back_populates="note", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_notes_owner_created", "owner_id", "created_at"),
        CheckConstraint(
            "language_confidence >= 0 AND language_confidence <= 1",
            name="ck_notes_language_confidence",
        ),
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', owner='{self.owner_id}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(String(36), primary_key=True)
    owner_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    # Casefolded name, enforces case-insensitive uniqueness per owner
    name_key = Column(String(255), nullable=False)
    color = Column(String(7), default="#21409A", nullable=False)
    icon = Column(String(32), nullable=True)
    description = Column(Text, nullable=True)
    usage_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    notes = relationship("DBNote", secondary=note_tags, back_populates="tags")

    __table_args__ = (
        UniqueConstraint("owner_id", "name_key", name="uq_tags_owner_name"),
        Index("ix_tags_owner_usage", "owner_id", "usage_count"),
        CheckConstraint("usage_count >= 0", name="ck_tags_usage_count"),
    )

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id='{self.id}', name='{self.name}', usage={self.usage_count})>"


class DBSearchTerm(Base):
    """One (field, token) entry of a note's derived search representation."""
    __tablename__ = "search_terms"
    note_id = Column(
        String(36), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True
    )
    field = Column(String(1), primary_key=True)
    token = Column(String(255), primary_key=True)
    owner_id = Column(String(255), nullable=False)
    term_frequency = Column(Integer, default=1, nullable=False)

    note = relationship("DBNote", back_populates="terms")

    __table_args__ = (
        Index("ix_search_terms_owner_token", "owner_id", "token"),
    )

    def __repr__(self) -> str:
        return (
            f"<SearchTerm(note='{self.note_id}', field='{self.field}', "
            f"token='{self.token}', tf={self.term_frequency})>"
        )


def init_db(db_url: Optional[str] = None, busy_timeout: Optional[float] = None) -> Engine:
    """Initialize the database with hardened configuration.

    Applies SQLite settings for crash resilience and concurrency:
    - WAL (Write-Ahead Logging) so readers never block on the writer
    - NORMAL synchronous mode
    - foreign keys enforced, so association and index rows cascade
    - explicit transaction control: the pysqlite driver's implicit BEGIN is
      disabled and a BEGIN statement is emitted per transaction. Sessions
      bound through get_write_session_factory() use BEGIN IMMEDIATE and
      take the write lock up front.
    """
    timeout = config.busy_timeout_seconds if busy_timeout is None else busy_timeout

    # SQLite is single-writer, so a small pool is ideal
    engine = create_engine(
        db_url or config.get_db_url(),
        poolclass=QueuePool,
        pool_size=5,           # Base pool size (concurrent reads)
        max_overflow=10,       # Allow up to 15 total connections under load
        pool_timeout=30,       # Wait up to 30s for a connection
        pool_recycle=3600,     # Recycle connections after 1 hour
        pool_pre_ping=True,    # Validate connections before use
        connect_args={"timeout": timeout, "check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Hand transaction control to the "begin" listener below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory for read transactions (deferred BEGIN)."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_write_session_factory(engine: Engine) -> sessionmaker:
    """Get a session factory whose transactions start with BEGIN IMMEDIATE."""
    return sessionmaker(
        bind=engine.execution_options(sqlite_begin="IMMEDIATE"),
        expire_on_commit=False,
    )
