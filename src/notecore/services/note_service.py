"""Service layer for note, search and tag operations."""

import datetime
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.engine import Engine

from notecore.exceptions import NoteNotFoundError
from notecore.models.db_models import init_db
from notecore.models.schema import (
    IntegrityReport,
    Note,
    NoteFilter,
    SearchPage,
    SortOrder,
    SuggestedTag,
    Tag,
    utc_now,
)
from notecore.observability import traced
from notecore.services.suggester import suggest_tags
from notecore.storage.index_maintainer import IndexMaintainer
from notecore.storage.note_repository import NoteRepository
from notecore.storage.search_index import SearchIndex
from notecore.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)


class NoteService:
    """Entry point for the capture, search and tagging collaborators.

    Every operation is scoped to the ``owner_id`` supplied by the caller;
    the service trusts it and performs no authentication.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        note_repository: Optional[NoteRepository] = None,
        tag_repository: Optional[TagRepository] = None,
        search_index: Optional[SearchIndex] = None,
        maintainer: Optional[IndexMaintainer] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        """Initialize the service.

        Args:
            engine: Shared SQLAlchemy engine. Created with init_db() if None
                and no repository is given.
            note_repository: Note storage backend.
            tag_repository: Tag catalog backend.
            search_index: Query planner and ranker.
            maintainer: Index maintainer shared by the repositories.
            clock: Returns the current time; stamps created_at/updated_at
                and picks the time-of-day suggestion. Defaults to UTC now.
        """
        if engine is None:
            engine = note_repository.engine if note_repository is not None else init_db()
        self.engine = engine
        self.maintainer = maintainer or IndexMaintainer()
        self.notes = note_repository or NoteRepository(engine=engine, maintainer=self.maintainer)
        self.tags = tag_repository or TagRepository(engine=engine, maintainer=self.maintainer)
        self.search_index = search_index or SearchIndex(engine=engine)
        self.clock = clock or utc_now

    # =========================================================================
    # Notes
    # =========================================================================

    @traced("upsert_note")
    def upsert_note(
        self,
        owner_id: str,
        body: str,
        title: Optional[str] = None,
        note_id: Optional[str] = None,
    ) -> Note:
        """Create or update a note; the search representation is rebuilt
        in the same transaction."""
        return self.notes.upsert(
            owner_id, body, title=title, note_id=note_id, now=self.clock()
        )

    @traced("delete_note")
    def delete_note(self, owner_id: str, note_id: str) -> None:
        """Soft-delete a note. Deleting a missing note is not an error."""
        if not self.notes.delete(owner_id, note_id, now=self.clock()):
            logger.debug(f"delete_note: nothing to delete for {note_id}")

    @traced("get_note")
    def get_note(self, owner_id: str, note_id: str) -> Optional[Note]:
        return self.notes.get(owner_id, note_id)

    @traced("notes_updated_since")
    def notes_updated_since(
        self,
        owner_id: str,
        since: datetime.datetime,
        include_deleted: bool = True,
    ) -> List[Note]:
        """Notes changed after ``since``, for incremental sync."""
        return self.notes.notes_updated_since(
            owner_id, since, include_deleted=include_deleted
        )

    @traced("get_notes_by_language")
    def get_notes_by_language(
        self,
        owner_id: str,
        language_code: str,
        min_confidence: Optional[float] = None,
    ) -> List[Note]:
        return self.notes.notes_by_language(
            owner_id, language_code, min_confidence=min_confidence
        )

    @traced("search_notes")
    def search_notes(
        self,
        owner_id: str,
        query: Optional[str] = None,
        tag_ids: Optional[Iterable[str]] = None,
        sort: Union[SortOrder, str] = SortOrder.RELEVANCE,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        language: Optional[str] = None,
        match_all_tags: bool = True,
        note_filter: Optional[NoteFilter] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> SearchPage:
        """Search an owner's notes. See SearchIndex.search for arguments."""
        return self.search_index.search(
            owner_id,
            query=query,
            tag_ids=tag_ids,
            sort=sort,
            cursor=cursor,
            limit=limit,
            language=language,
            match_all_tags=match_all_tags,
            note_filter=note_filter,
            cancel_event=cancel_event,
            timeout=timeout,
        )

    # =========================================================================
    # Tag catalog
    # =========================================================================

    @traced("create_tag")
    def create_tag(
        self,
        owner_id: str,
        name: str,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tag:
        return self.tags.create_tag(
            owner_id, name, color=color, icon=icon, description=description,
            now=self.clock(),
        )

    @traced("rename_tag")
    def rename_tag(self, owner_id: str, tag_id: str, new_name: str) -> Tag:
        return self.tags.rename_tag(owner_id, tag_id, new_name)

    @traced("update_tag")
    def update_tag(
        self,
        owner_id: str,
        tag_id: str,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tag:
        return self.tags.update_tag(
            owner_id, tag_id, color=color, icon=icon, description=description
        )

    @traced("delete_tag")
    def delete_tag(self, owner_id: str, tag_id: str) -> None:
        """Delete a tag and its associations. Missing tags are ignored."""
        self.tags.delete_tag(owner_id, tag_id)

    @traced("merge_tags")
    def merge_tags(self, owner_id: str, source_ids: Iterable[str], target_id: str) -> int:
        """Merge source tags into target; returns the number of affected notes."""
        return self.tags.merge_tags(owner_id, source_ids, target_id)

    @traced("list_tags")
    def list_tags(self, owner_id: str) -> List[Tag]:
        return self.tags.list_tags(owner_id)

    @traced("get_tag")
    def get_tag(self, owner_id: str, tag_id: str) -> Optional[Tag]:
        return self.tags.get_tag(owner_id, tag_id)

    @traced("get_tags_for_note")
    def get_tags_for_note(self, owner_id: str, note_id: str) -> List[Tag]:
        return self.tags.get_tags_for_note(owner_id, note_id)

    @traced("get_note_ids_for_tag")
    def get_note_ids_for_tag(self, owner_id: str, tag_id: str) -> List[str]:
        return self.tags.get_note_ids_for_tag(owner_id, tag_id)

    @traced("add_tag_to_note")
    def add_tag_to_note(
        self, owner_id: str, note_id: str, tag_id: str, auto_tagged: bool = False
    ) -> bool:
        """Attach a tag; returns False if the note already carried it."""
        return self.tags.add_tag_to_note(
            owner_id, note_id, tag_id, auto_tagged=auto_tagged, now=self.clock()
        )

    @traced("remove_tag_from_note")
    def remove_tag_from_note(self, owner_id: str, note_id: str, tag_id: str) -> bool:
        """Detach a tag; returns False if the note did not carry it."""
        return self.tags.remove_tag_from_note(owner_id, note_id, tag_id)

    # =========================================================================
    # Suggestions
    # =========================================================================

    @traced("suggest_tags")
    def suggest_tags(
        self,
        owner_id: str,
        note_text: str,
        now: Optional[datetime.datetime] = None,
    ) -> List[SuggestedTag]:
        """Suggest tags for text against the owner's catalog.

        ``now`` should be the capture time in the owner's local time; the
        service clock is used when it is omitted.
        """
        catalog = self.tags.list_tags(owner_id)
        return suggest_tags(note_text, catalog, now if now is not None else self.clock())

    @traced("suggest_tags_for_note")
    def suggest_tags_for_note(
        self, owner_id: str, note_id: str, now: Optional[datetime.datetime] = None
    ) -> List[SuggestedTag]:
        """Suggest tags for a stored note, leaving out tags it already has."""
        note = self.notes.get(owner_id, note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        attached = {t.id for t in self.tags.get_tags_for_note(owner_id, note_id)}
        return [
            s for s in self.suggest_tags(owner_id, note.text, now=now)
            if s.tag_id not in attached
        ]

    @traced("accept_suggestion")
    def accept_suggestion(
        self,
        owner_id: str,
        note_id: str,
        suggestion: Union[SuggestedTag, str],
        color: Optional[str] = None,
    ) -> Tag:
        """Apply a suggestion: get or create the tag and attach it as
        auto-tagged, in one transaction.

        Returns:
            The tag with its usage_count after attaching.
        """
        name = suggestion.name if isinstance(suggestion, SuggestedTag) else suggestion
        return self.tags.apply_tag(
            owner_id, note_id, name, color=color, auto_tagged=True, now=self.clock()
        )

    # =========================================================================
    # Maintenance
    # =========================================================================

    @traced("check_integrity")
    def check_integrity(self, owner_id: str) -> IntegrityReport:
        return self.tags.check_integrity(owner_id)

    @traced("repair_integrity")
    def repair_integrity(self, owner_id: str) -> IntegrityReport:
        return self.tags.repair_integrity(owner_id)

    @traced("reindex")
    def reindex(self, owner_id: str) -> int:
        """Re-detect languages and rebuild search terms for every live note."""
        return self.notes.reindex(owner_id)

    @traced("get_stats")
    def get_stats(self, owner_id: str) -> Dict[str, Any]:
        """Counts of notes, notes per language and tags for an owner."""
        tags = self.tags.list_tags(owner_id)
        return {
            "notes": self.notes.count_notes(owner_id),
            "languages": self.notes.count_by_language(owner_id),
            "tags": len(tags),
            "tagged": sum(t.usage_count for t in tags),
        }
