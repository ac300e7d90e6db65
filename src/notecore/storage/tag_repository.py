"""Repository for the tag catalog and note-tag associations."""
import datetime
import logging
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from notecore.config import config
from notecore.exceptions import (
    ConflictError,
    ErrorCode,
    IntegrityViolation,
    NoteNotFoundError,
    StorageError,
    TagNotFoundError,
    ValidationError,
)
from notecore.models.db_models import (
    DBNote,
    DBSearchTerm,
    DBTag,
    get_session_factory,
    get_write_session_factory,
    init_db,
    note_tags,
)
from notecore.models.schema import (
    IntegrityReport,
    Tag,
    ensure_timezone_aware,
    generate_id,
    to_db_time,
    utc_now,
    validate_color,
    validate_description,
    validate_icon,
    validate_tag_name,
)
from notecore.storage.index_maintainer import IndexMaintainer
from notecore.utils import normalize_tag_key

logger = logging.getLogger(__name__)


def adjust_usage_count(session: Session, owner_id: str, tag_id: str, delta: int) -> None:
    """Apply a usage_count delta inside the caller's transaction.

    Decrements are guarded in SQL, so a counter can never go below zero.
    A decrement that would do so means the stored counter has drifted; it
    is logged at CRITICAL and raised, rolling back the whole transaction.

    Raises:
        IntegrityViolation: If the decrement would make usage_count negative.
    """
    if delta == 0:
        return
    stmt = update(DBTag).where(DBTag.id == tag_id, DBTag.owner_id == owner_id)
    if delta < 0:
        stmt = stmt.where(DBTag.usage_count >= -delta)
    result = session.execute(
        stmt.values(usage_count=DBTag.usage_count + delta),
        execution_options={"synchronize_session": False},
    )
    if result.rowcount == 0:
        logger.critical(
            f"usage_count of tag {tag_id} (owner {owner_id}) would drop below zero "
            f"applying delta {delta}; run repair_integrity"
        )
        raise IntegrityViolation(
            f"usage_count of tag '{tag_id}' would become negative",
            owner_id=owner_id,
            tag_id=tag_id,
        )


class TagRepository:
    """Repository for an owner's tag catalog.

    Tag names are unique per owner ignoring case, enforced by the unique
    (owner_id, name_key) constraint. Every association change adjusts the
    tag's usage_count in the same BEGIN IMMEDIATE transaction.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        maintainer: Optional[IndexMaintainer] = None,
        max_name_length: Optional[int] = None,
    ):
        """Initialize the tag repository.

        Args:
            engine: SQLAlchemy engine; init_db() is used when omitted.
            maintainer: Used by integrity checks to rebuild missing search
                representations.
            max_name_length: Tag name limit; config.max_tag_name_length
                when omitted.
        """
        self.engine = engine if engine is not None else init_db()
        self.session_factory = get_session_factory(self.engine)
        self.write_session_factory = get_write_session_factory(self.engine)
        self.maintainer = maintainer or IndexMaintainer()
        self.max_name_length = max_name_length or config.max_tag_name_length

    @contextmanager
    def _write(self, operation: str) -> Iterator[Session]:
        """Run a block in one write transaction, mapping driver errors."""
        try:
            with self.write_session_factory() as session, session.begin():
                yield session
        except IntegrityError as e:
            if "tags.owner_id, tags.name_key" in str(e.orig):
                raise ConflictError(
                    "A tag with this name already exists",
                    code=ErrorCode.TAG_NAME_CONFLICT,
                ) from e
            logger.error(f"Constraint failure during {operation}: {e}")
            raise StorageError(
                f"Constraint failure during {operation}",
                operation=operation,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Storage failure during {operation}: {e}")
            raise StorageError(
                f"Failed to {operation.replace('_', ' ')}",
                operation=operation,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    @staticmethod
    def _db_tag_to_model(db_tag: DBTag) -> Tag:
        return Tag(
            id=db_tag.id,
            owner_id=db_tag.owner_id,
            name=db_tag.name,
            color=db_tag.color,
            icon=db_tag.icon,
            description=db_tag.description,
            usage_count=db_tag.usage_count,
            created_at=ensure_timezone_aware(db_tag.created_at),
            updated_at=ensure_timezone_aware(db_tag.updated_at),
        )

    def _validate_name(self, name: str) -> Tuple[str, str]:
        try:
            clean = validate_tag_name(name, self.max_name_length)
        except ValueError as e:
            raise ValidationError(
                str(e), field="name", value=name, code=ErrorCode.TAG_INVALID
            ) from e
        return clean, normalize_tag_key(clean)

    @staticmethod
    def _validate_field(validator, field: str, value):
        try:
            return validator(value)
        except ValueError as e:
            raise ValidationError(
                str(e), field=field, value=value, code=ErrorCode.TAG_INVALID
            ) from e

    @staticmethod
    def _get_owned_tag(session: Session, owner_id: str, tag_id: str) -> DBTag:
        db_tag = session.get(DBTag, tag_id)
        if db_tag is None or db_tag.owner_id != owner_id:
            raise TagNotFoundError(tag_id)
        return db_tag

    @staticmethod
    def _require_live_note(session: Session, owner_id: str, note_id: str) -> DBNote:
        db_note = session.get(DBNote, note_id)
        if (
            db_note is None
            or db_note.owner_id != owner_id
            or db_note.deleted_at is not None
        ):
            raise NoteNotFoundError(note_id)
        return db_note

    @staticmethod
    def _find_by_key(
        session: Session, owner_id: str, name_key: str
    ) -> Optional[DBTag]:
        return session.scalar(
            select(DBTag).where(DBTag.owner_id == owner_id, DBTag.name_key == name_key)
        )

    @staticmethod
    def _attach(
        session: Session,
        owner_id: str,
        note_id: str,
        tag_id: str,
        auto_tagged: bool,
        tagged_at: datetime.datetime,
    ) -> bool:
        """Insert one association; the counter delta follows the rows inserted."""
        result = session.execute(
            sqlite_insert(note_tags)
            .values(
                note_id=note_id,
                tag_id=tag_id,
                tagged_at=tagged_at,
                auto_tagged=auto_tagged,
            )
            .on_conflict_do_nothing(index_elements=["note_id", "tag_id"])
        )
        if result.rowcount != 1:
            return False
        adjust_usage_count(session, owner_id, tag_id, 1)
        return True

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def create_tag(
        self,
        owner_id: str,
        name: str,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        description: Optional[str] = None,
        now: Optional[datetime.datetime] = None,
    ) -> Tag:
        """Create a tag with usage_count 0.

        Raises:
            ValidationError: For an empty or too long name, or a bad color.
            ConflictError: If the owner already has a tag with this name
                ignoring case.
        """
        clean, key = self._validate_name(name)
        color = self._validate_field(
            validate_color, "color", color or config.default_tag_color
        )
        icon = self._validate_field(validate_icon, "icon", icon)
        description = self._validate_field(
            validate_description, "description", description
        )
        timestamp = to_db_time(now or utc_now())

        with self._write("create_tag") as session:
            existing = self._find_by_key(session, owner_id, key)
            if existing is not None:
                raise ConflictError(
                    f"Tag '{existing.name}' already exists",
                    tag_name=clean,
                    tag_id=existing.id,
                )
            db_tag = DBTag(
                id=generate_id(),
                owner_id=owner_id,
                name=clean,
                name_key=key,
                color=color,
                icon=icon,
                description=description,
                usage_count=0,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(db_tag)
            session.flush()
            tag = self._db_tag_to_model(db_tag)

        logger.info(f"Created tag {tag.id} '{tag.name}' for owner {owner_id}")
        return tag

    def rename_tag(self, owner_id: str, tag_id: str, new_name: str) -> Tag:
        """Rename a tag.

        Changing only the casing of the tag's own name is allowed.

        Raises:
            TagNotFoundError: If the tag does not exist for the owner.
            ConflictError: If another tag of the owner has the name.
        """
        clean, key = self._validate_name(new_name)
        with self._write("rename_tag") as session:
            db_tag = self._get_owned_tag(session, owner_id, tag_id)
            existing = self._find_by_key(session, owner_id, key)
            if existing is not None and existing.id != tag_id:
                raise ConflictError(
                    f"Tag '{existing.name}' already exists",
                    tag_name=clean,
                    tag_id=existing.id,
                )
            old_name = db_tag.name
            db_tag.name = clean
            db_tag.name_key = key
            db_tag.updated_at = to_db_time(utc_now())
            session.flush()
            tag = self._db_tag_to_model(db_tag)

        logger.info(f"Renamed tag {tag_id} '{old_name}' -> '{clean}'")
        return tag

    def update_tag(
        self,
        owner_id: str,
        tag_id: str,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tag:
        """Update presentation fields of a tag.

        None leaves a field unchanged; an empty string clears the icon or
        description.
        """
        changes = {}
        if color is not None:
            changes["color"] = self._validate_field(validate_color, "color", color)
        if icon is not None:
            changes["icon"] = self._validate_field(validate_icon, "icon", icon)
        if description is not None:
            changes["description"] = self._validate_field(
                validate_description, "description", description
            )

        with self._write("update_tag") as session:
            db_tag = self._get_owned_tag(session, owner_id, tag_id)
            for attr, value in changes.items():
                setattr(db_tag, attr, value)
            if changes:
                db_tag.updated_at = to_db_time(utc_now())
            session.flush()
            return self._db_tag_to_model(db_tag)

    def delete_tag(self, owner_id: str, tag_id: str) -> bool:
        """Delete a tag and all of its associations.

        Returns:
            True if a tag was deleted, False if it did not exist.
        """
        with self._write("delete_tag") as session:
            db_tag = session.get(DBTag, tag_id)
            if db_tag is None or db_tag.owner_id != owner_id:
                return False
            detached = session.execute(
                delete(note_tags).where(note_tags.c.tag_id == tag_id)
            ).rowcount
            session.execute(delete(DBTag).where(DBTag.id == tag_id))

        logger.info(f"Deleted tag {tag_id} (detached from {detached} notes)")
        return True

    def merge_tags(self, owner_id: str, source_ids: Iterable[str], target_id: str) -> int:
        """Merge source tags into a target tag.

        Every note carrying a source tag ends up carrying the target; the
        source tags are deleted. The whole merge holds the write lock and
        is all-or-nothing.

        Returns:
            Number of distinct notes that carried at least one source tag.

        Raises:
            ValidationError: If no source tag is given.
            ConflictError: If the target is among the sources.
            TagNotFoundError: If the target or a source does not exist.
        """
        sources = list(dict.fromkeys(source_ids))
        if not sources:
            raise ValidationError("At least one source tag is required", field="source_ids")
        if target_id in sources:
            raise ConflictError(
                "Cannot merge a tag into itself",
                tag_id=target_id,
                code=ErrorCode.TAG_MERGE_CONFLICT,
            )

        with self._write("merge_tags") as session:
            self._get_owned_tag(session, owner_id, target_id)
            for source_id in sources:
                self._get_owned_tag(session, owner_id, source_id)

            rows = session.execute(
                select(
                    note_tags.c.note_id, note_tags.c.tagged_at, note_tags.c.auto_tagged
                ).where(note_tags.c.tag_id.in_(sources))
            ).all()

            # Per note: earliest tagging time, auto only if every source was auto
            carried: Dict[str, Dict] = {}
            for note_id, tagged_at, auto_tagged in rows:
                entry = carried.setdefault(
                    note_id, {"tagged_at": tagged_at, "auto_tagged": True}
                )
                entry["tagged_at"] = min(entry["tagged_at"], tagged_at)
                entry["auto_tagged"] = entry["auto_tagged"] and bool(auto_tagged)

            already_tagged = set(
                session.scalars(
                    select(note_tags.c.note_id).where(note_tags.c.tag_id == target_id)
                ).all()
            )
            moved = [
                {
                    "note_id": note_id,
                    "tag_id": target_id,
                    "tagged_at": entry["tagged_at"],
                    "auto_tagged": entry["auto_tagged"],
                }
                for note_id, entry in sorted(carried.items())
                if note_id not in already_tagged
            ]
            if moved:
                session.execute(insert(note_tags), moved)

            session.execute(delete(note_tags).where(note_tags.c.tag_id.in_(sources)))
            session.execute(delete(DBTag).where(DBTag.id.in_(sources)))
            adjust_usage_count(session, owner_id, target_id, len(moved))

        logger.info(
            f"Merged {len(sources)} tags into {target_id}: "
            f"{len(carried)} notes affected, {len(moved)} associations moved"
        )
        return len(carried)

    # ------------------------------------------------------------------
    # Associations
    # ------------------------------------------------------------------

    def apply_tag(
        self,
        owner_id: str,
        note_id: str,
        name: str,
        color: Optional[str] = None,
        auto_tagged: bool = True,
        now: Optional[datetime.datetime] = None,
    ) -> Tag:
        """Attach the owner's tag called ``name`` to a note, creating the tag
        if it does not exist yet.

        Lookup, creation and attachment share one transaction, so a tag is
        never created for a note that disappeared in between.

        Returns:
            The tag with its usage_count after attaching.

        Raises:
            ValidationError: For an invalid name or color.
            NoteNotFoundError: If the note is missing or deleted.
        """
        clean, key = self._validate_name(name)
        color = self._validate_field(
            validate_color, "color", color or config.default_tag_color
        )
        timestamp = to_db_time(now or utc_now())

        with self._write("apply_tag") as session:
            self._require_live_note(session, owner_id, note_id)
            db_tag = self._find_by_key(session, owner_id, key)
            created_tag = db_tag is None
            if created_tag:
                db_tag = DBTag(
                    id=generate_id(),
                    owner_id=owner_id,
                    name=clean,
                    name_key=key,
                    color=color,
                    usage_count=0,
                    created_at=timestamp,
                    updated_at=timestamp,
                )
                session.add(db_tag)
                session.flush()
            attached = self._attach(
                session, owner_id, note_id, db_tag.id, auto_tagged, timestamp
            )
            session.refresh(db_tag)
            tag = self._db_tag_to_model(db_tag)

        if created_tag:
            logger.info(f"Created tag {tag.id} '{clean}' for owner {owner_id}")
        if attached:
            logger.debug(f"Tagged note {note_id} with {tag.id} (auto={auto_tagged})")
        return tag

    def add_tag_to_note(
        self,
        owner_id: str,
        note_id: str,
        tag_id: str,
        auto_tagged: bool = False,
        now: Optional[datetime.datetime] = None,
    ) -> bool:
        """Attach a tag to a note.

        Idempotent: attaching an existing association changes nothing.

        Returns:
            True if a new association was created.

        Raises:
            NoteNotFoundError: If the note is missing or deleted.
            TagNotFoundError: If the tag is missing.
        """
        with self._write("add_tag_to_note") as session:
            self._require_live_note(session, owner_id, note_id)
            self._get_owned_tag(session, owner_id, tag_id)
            created = self._attach(
                session, owner_id, note_id, tag_id, auto_tagged,
                to_db_time(now or utc_now()),
            )

        if created:
            logger.debug(f"Tagged note {note_id} with {tag_id} (auto={auto_tagged})")
        return created

    def remove_tag_from_note(self, owner_id: str, note_id: str, tag_id: str) -> bool:
        """Detach a tag from a note.

        Returns:
            True if an association was removed, False if there was none.

        Raises:
            NoteNotFoundError: If the note is missing or deleted.
            TagNotFoundError: If the tag is missing.
        """
        with self._write("remove_tag_from_note") as session:
            self._require_live_note(session, owner_id, note_id)
            self._get_owned_tag(session, owner_id, tag_id)
            result = session.execute(
                delete(note_tags).where(
                    note_tags.c.note_id == note_id, note_tags.c.tag_id == tag_id
                )
            )
            removed = result.rowcount == 1
            if removed:
                adjust_usage_count(session, owner_id, tag_id, -1)

        if removed:
            logger.debug(f"Removed tag {tag_id} from note {note_id}")
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_tag(self, owner_id: str, tag_id: str) -> Optional[Tag]:
        """Get a tag by ID."""
        with self.session_factory() as session:
            db_tag = session.get(DBTag, tag_id)
            if db_tag is None or db_tag.owner_id != owner_id:
                return None
            return self._db_tag_to_model(db_tag)

    def get_tag_by_name(self, owner_id: str, name: str) -> Optional[Tag]:
        """Get a tag by name, ignoring case."""
        if not name or not name.strip():
            return None
        with self.session_factory() as session:
            db_tag = self._find_by_key(session, owner_id, normalize_tag_key(name))
            return self._db_tag_to_model(db_tag) if db_tag else None

    def list_tags(self, owner_id: str) -> List[Tag]:
        """List the owner's catalog, most used first, then by name."""
        with self.session_factory() as session:
            db_tags = session.scalars(
                select(DBTag)
                .where(DBTag.owner_id == owner_id)
                .order_by(DBTag.usage_count.desc(), DBTag.name_key, DBTag.id)
            ).all()
            return [self._db_tag_to_model(t) for t in db_tags]

    def get_tags_for_note(self, owner_id: str, note_id: str) -> List[Tag]:
        """Get the tags attached to a note, ordered by name."""
        with self.session_factory() as session:
            db_tags = session.scalars(
                select(DBTag)
                .join(note_tags, DBTag.id == note_tags.c.tag_id)
                .where(note_tags.c.note_id == note_id, DBTag.owner_id == owner_id)
                .order_by(DBTag.name_key)
            ).all()
            return [self._db_tag_to_model(t) for t in db_tags]

    def get_note_ids_for_tag(self, owner_id: str, tag_id: str) -> List[str]:
        """Get the IDs of live notes carrying a tag."""
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(note_tags.c.note_id)
                    .join(DBNote, DBNote.id == note_tags.c.note_id)
                    .where(
                        note_tags.c.tag_id == tag_id,
                        DBNote.owner_id == owner_id,
                        DBNote.deleted_at.is_(None),
                    )
                    .order_by(note_tags.c.note_id)
                ).all()
            )

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def _collect_integrity(self, session: Session, owner_id: str) -> IntegrityReport:
        report = IntegrityReport(owner_id=owner_id)

        orphans = session.execute(
            select(note_tags.c.note_id, note_tags.c.tag_id)
            .join(DBTag, DBTag.id == note_tags.c.tag_id)
            .outerjoin(DBNote, DBNote.id == note_tags.c.note_id)
            .where(DBTag.owner_id == owner_id)
            .where(
                (DBNote.id.is_(None))
                | (DBNote.deleted_at.is_not(None))
                | (DBNote.owner_id != owner_id)
            )
            .order_by(note_tags.c.note_id, note_tags.c.tag_id)
        ).all()
        report.orphaned_associations = [(n, t) for n, t in orphans]

        live_counts = (
            select(note_tags.c.tag_id, func.count().label("actual"))
            .join(DBNote, DBNote.id == note_tags.c.note_id)
            .where(DBNote.owner_id == owner_id, DBNote.deleted_at.is_(None))
            .group_by(note_tags.c.tag_id)
            .subquery()
        )
        drift = session.execute(
            select(DBTag.id, DBTag.usage_count, func.coalesce(live_counts.c.actual, 0))
            .outerjoin(live_counts, live_counts.c.tag_id == DBTag.id)
            .where(DBTag.owner_id == owner_id)
            .where(DBTag.usage_count != func.coalesce(live_counts.c.actual, 0))
            .order_by(DBTag.id)
        ).all()
        report.usage_count_drift = {
            tag_id: (stored, actual) for tag_id, stored, actual in drift
        }

        candidates = session.scalars(
            select(DBNote)
            .outerjoin(DBSearchTerm, DBSearchTerm.note_id == DBNote.id)
            .where(
                DBNote.owner_id == owner_id,
                DBNote.deleted_at.is_(None),
                DBSearchTerm.note_id.is_(None),
            )
            .order_by(DBNote.id)
        ).all()
        # Bodies of pure punctuation legitimately have no tokens
        report.unindexed_note_ids = [
            n.id for n in candidates if self.maintainer.build(n.title, n.body).terms
        ]
        return report

    def check_integrity(self, owner_id: str) -> IntegrityReport:
        """Report usage_count drift, orphaned associations and unindexed notes."""
        with self.session_factory() as session:
            report = self._collect_integrity(session, owner_id)
        if report.is_clean:
            logger.debug(f"Integrity check clean for owner {owner_id}")
        else:
            logger.warning(f"Integrity problems for owner {owner_id}: {report.to_dict()}")
        return report

    def repair_integrity(self, owner_id: str) -> IntegrityReport:
        """Fix what check_integrity finds, in one write transaction.

        Orphaned associations are removed, usage_count is recomputed from
        the remaining associations and missing search representations are
        rebuilt.

        Returns:
            The report of problems found before the repair.
        """
        with self._write("repair_integrity") as session:
            report = self._collect_integrity(session, owner_id)
            for note_id, tag_id in report.orphaned_associations:
                session.execute(
                    delete(note_tags).where(
                        note_tags.c.note_id == note_id, note_tags.c.tag_id == tag_id
                    )
                )
            for tag_id, (_stored, actual) in report.usage_count_drift.items():
                session.execute(
                    update(DBTag)
                    .where(DBTag.id == tag_id, DBTag.owner_id == owner_id)
                    .values(usage_count=actual),
                    execution_options={"synchronize_session": False},
                )
            for note_id in report.unindexed_note_ids:
                db_note = session.get(DBNote, note_id)
                indexed = self.maintainer.build(db_note.title, db_note.body)
                self.maintainer.write(session, note_id, owner_id, indexed)
        report.repaired = True
        if not report.is_clean:
            logger.warning(f"Repaired integrity for owner {owner_id}: {report.to_dict()}")
        return report
