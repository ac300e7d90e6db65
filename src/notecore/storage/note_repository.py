"""Repository for note storage and retrieval."""

import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from notecore.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    StorageError,
    ValidationError,
)
from notecore.models.db_models import (
    DBNote,
    get_session_factory,
    get_write_session_factory,
    init_db,
    note_tags,
)
from notecore.models.schema import (
    Note,
    ensure_timezone_aware,
    generate_id,
    to_db_time,
    utc_now,
    validate_body,
    validate_title,
)
from notecore.storage.index_maintainer import IndexMaintainer
from notecore.storage.tag_repository import adjust_usage_count

logger = logging.getLogger(__name__)

MAX_NOTE_ID_LENGTH = 36


def validate_note_input(title: Optional[str], body: Optional[str]) -> Dict[str, Any]:
    """Validate note fields and return the normalized values.

    Raises:
        ValidationError: If the body is blank or the title too long.
    """
    try:
        body = validate_body(body)
    except ValueError as e:
        raise ValidationError(
            str(e), field="body", code=ErrorCode.NOTE_BODY_REQUIRED
        ) from e
    try:
        title = validate_title(title)
    except ValueError as e:
        raise ValidationError(
            str(e), field="title", value=title, code=ErrorCode.NOTE_VALIDATION_FAILED
        ) from e
    return {"title": title, "body": body}


def note_from_db(db_note: DBNote) -> Note:
    """Convert a SQLAlchemy DBNote to a domain Note."""
    return Note(
        id=db_note.id,
        owner_id=db_note.owner_id,
        title=db_note.title,
        body=db_note.body,
        language_code=db_note.language_code,
        language_confidence=db_note.language_confidence,
        analyzer=db_note.analyzer,
        created_at=ensure_timezone_aware(db_note.created_at),
        updated_at=ensure_timezone_aware(db_note.updated_at),
        deleted_at=(
            ensure_timezone_aware(db_note.deleted_at) if db_note.deleted_at else None
        ),
    )


class NoteRepository:
    """Repository for notes and their derived search representation.

    Every write runs in one BEGIN IMMEDIATE transaction that covers the
    note row, its search terms and, on delete, its tag associations and the
    affected usage counters.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        maintainer: Optional[IndexMaintainer] = None,
    ):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. When omitted, init_db()
                creates one from the global config. Sharing an engine lets
                the note, tag and search components use one connection pool.
            maintainer: Index maintainer used for derived representations.
        """
        self.engine = engine if engine is not None else init_db()
        self.session_factory = get_session_factory(self.engine)
        self.write_session_factory = get_write_session_factory(self.engine)
        self.maintainer = maintainer or IndexMaintainer()

    def upsert(
        self,
        owner_id: str,
        body: str,
        title: Optional[str] = None,
        note_id: Optional[str] = None,
        now: Optional[datetime.datetime] = None,
    ) -> Note:
        """Create or update a note together with its search representation.

        A note_id that does not exist yet creates the note under that ID,
        so devices can assign IDs offline. Updating a soft-deleted note or a
        note of another owner raises NoteNotFoundError.

        Raises:
            ValidationError: Before any write, for blank bodies or bad IDs.
            NoteNotFoundError: If the note was deleted or belongs elsewhere.
        """
        fields = validate_note_input(title, body)
        if note_id is not None and (
            not note_id.strip() or len(note_id) > MAX_NOTE_ID_LENGTH
        ):
            raise ValidationError(
                f"Note ID must be 1-{MAX_NOTE_ID_LENGTH} characters",
                field="note_id",
                value=note_id,
            )

        # Analysis is pure and runs before the write lock is taken
        indexed = self.maintainer.build(fields["title"], fields["body"])
        timestamp = to_db_time(now or utc_now())

        try:
            with self.write_session_factory() as session, session.begin():
                db_note = session.get(DBNote, note_id) if note_id else None
                if db_note is not None and (
                    db_note.owner_id != owner_id or db_note.deleted_at is not None
                ):
                    raise NoteNotFoundError(note_id)

                if db_note is None:
                    db_note = DBNote(
                        id=note_id or generate_id(),
                        owner_id=owner_id,
                        created_at=timestamp,
                    )
                    session.add(db_note)
                    created = True
                else:
                    created = False

                db_note.title = fields["title"]
                db_note.body = fields["body"]
                db_note.language_code = indexed.language.code
                db_note.language_confidence = indexed.language.confidence
                db_note.analyzer = indexed.analyzer
                db_note.updated_at = timestamp
                session.flush()

                term_count = self.maintainer.write(session, db_note.id, owner_id, indexed)
                note = note_from_db(db_note)
        except SQLAlchemyError as e:
            logger.error(f"Failed to write note for owner {owner_id}: {e}")
            raise StorageError(
                "Failed to write note",
                operation="upsert_note",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        logger.debug(
            f"{'Created' if created else 'Updated'} note {note.id} "
            f"(language={note.language_code}, analyzer={note.analyzer}, terms={term_count})"
        )
        return note

    def get(
        self, owner_id: str, note_id: str, include_deleted: bool = False
    ) -> Optional[Note]:
        """Get a note of an owner by ID, or None."""
        with self.session_factory() as session:
            db_note = session.get(DBNote, note_id)
            if db_note is None or db_note.owner_id != owner_id:
                return None
            if db_note.deleted_at is not None and not include_deleted:
                return None
            return note_from_db(db_note)

    def delete(
        self, owner_id: str, note_id: str, now: Optional[datetime.datetime] = None
    ) -> bool:
        """Soft-delete a note.

        Purges the search representation, removes all tag associations and
        decrements each affected tag's usage_count, all in one transaction.

        Returns:
            True if a live note was deleted, False if there was nothing to
            delete (already deleted, unknown, or owned by someone else).
        """
        timestamp = to_db_time(now or utc_now())
        try:
            with self.write_session_factory() as session, session.begin():
                db_note = session.get(DBNote, note_id)
                if (
                    db_note is None
                    or db_note.owner_id != owner_id
                    or db_note.deleted_at is not None
                ):
                    return False

                tag_ids = session.scalars(
                    select(note_tags.c.tag_id).where(note_tags.c.note_id == note_id)
                ).all()
                session.execute(delete(note_tags).where(note_tags.c.note_id == note_id))
                for tag_id in tag_ids:
                    adjust_usage_count(session, owner_id, tag_id, -1)

                self.maintainer.purge(session, note_id)
                db_note.deleted_at = timestamp
                db_note.updated_at = timestamp
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete note {note_id}: {e}")
            raise StorageError(
                f"Failed to delete note {note_id}",
                operation="delete_note",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        logger.info(f"Deleted note {note_id} (detached {len(tag_ids)} tags)")
        return True

    def exists(self, owner_id: str, note_id: str) -> bool:
        """Whether a live note with this ID belongs to the owner."""
        return self.get(owner_id, note_id) is not None

    def count_notes(self, owner_id: str) -> int:
        """Count live notes of an owner."""
        with self.session_factory() as session:
            return session.scalar(
                select(func.count(DBNote.id)).where(
                    DBNote.owner_id == owner_id, DBNote.deleted_at.is_(None)
                )
            ) or 0

    def count_by_language(self, owner_id: str) -> Dict[str, int]:
        """Count live notes of an owner per detected language code."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNote.language_code, func.count(DBNote.id))
                .where(DBNote.owner_id == owner_id, DBNote.deleted_at.is_(None))
                .group_by(DBNote.language_code)
            ).all()
        return {code: count for code, count in rows}

    def notes_updated_since(
        self,
        owner_id: str,
        since: datetime.datetime,
        include_deleted: bool = True,
    ) -> List[Note]:
        """Notes of an owner changed strictly after ``since``, newest change first.

        Soft-deleted notes are included by default so a syncing device
        learns about deletions too.
        """
        stmt = select(DBNote).where(
            DBNote.owner_id == owner_id, DBNote.updated_at > to_db_time(since)
        )
        if not include_deleted:
            stmt = stmt.where(DBNote.deleted_at.is_(None))
        stmt = stmt.order_by(DBNote.updated_at.desc(), DBNote.id.desc())
        with self.session_factory() as session:
            return [note_from_db(n) for n in session.scalars(stmt).all()]

    def notes_by_language(
        self,
        owner_id: str,
        language_code: str,
        min_confidence: Optional[float] = None,
    ) -> List[Note]:
        """Live notes detected as ``language_code``, most recently updated first.

        Raises:
            ValidationError: If min_confidence is outside [0, 1].
        """
        if min_confidence is not None and not 0.0 <= min_confidence <= 1.0:
            raise ValidationError(
                "Minimum confidence must be between 0 and 1",
                field="min_confidence",
                value=min_confidence,
            )
        stmt = select(DBNote).where(
            DBNote.owner_id == owner_id,
            DBNote.deleted_at.is_(None),
            DBNote.language_code == language_code.strip().lower(),
        )
        if min_confidence is not None:
            stmt = stmt.where(DBNote.language_confidence >= min_confidence)
        stmt = stmt.order_by(DBNote.updated_at.desc(), DBNote.id.desc())
        with self.session_factory() as session:
            return [note_from_db(n) for n in session.scalars(stmt).all()]

    def reindex(self, owner_id: str) -> int:
        """Rebuild language detection and search terms for an owner's notes."""
        with self.write_session_factory() as session, session.begin():
            return self.maintainer.reindex_owner(session, owner_id)
