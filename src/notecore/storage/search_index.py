"""Query planning, ranking and pagination over note search representations.

Queries are whitespace-separated terms. All terms are required; ``term*``
matches any token starting with ``term`` and ``-term`` excludes notes
containing it. A minus before a digit or symbol is part of the text, so
``-5`` searches for ``5``. Scores sum ``field_weight * term_frequency``
over matched terms, so title matches outweigh body matches.
"""
import datetime
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import (Any, Callable, Dict, Iterable, Iterator, List, Mapping,
                    NamedTuple, Optional, Sequence, Set, Tuple, Union)

from sqlalchemy import and_, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notecore.config import config
from notecore.exceptions import (ErrorCode, SearchCancelledError, SearchError,
                                 ValidationError)
from notecore.models.db_models import (DBNote, DBSearchTerm, DBTag,
                                       get_session_factory, init_db, note_tags)
from notecore.models.schema import (NoteFilter, SearchHit, SearchPage,
                                    SortOrder, WeightClass, to_db_time)
from notecore.storage.note_repository import note_from_db
from notecore.text.analyzers import Analyzer, AnalyzerRegistry, default_registry
from notecore.utils import decode_cursor, encode_cursor, escape_like_pattern

logger = logging.getLogger(__name__)

# Planned terms per polarity; later query terms are ignored
MAX_QUERY_TERMS = 64

# SQLite caps bound parameters per statement
_IN_CHUNK_SIZE = 500

# Ranking loop checks for cancellation every this many candidates
_CHECK_INTERVAL = 256


@dataclass(frozen=True)
class QueryTerm:
    """One analyzed query token."""

    token: str
    prefix: bool = False


@dataclass(frozen=True)
class ParsedQuery:
    """Analyzed query: required and excluded terms."""

    required: Tuple[QueryTerm, ...] = ()
    excluded: Tuple[QueryTerm, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.required and not self.excluded


class RankedNote(NamedTuple):
    note_id: str
    score: float
    created_at: datetime.datetime


def parse_query(query: str, analyzer: Analyzer, fallback: Analyzer) -> ParsedQuery:
    """Split a query into analyzed required and excluded terms.

    Prefix terms are analyzed with ``fallback`` (no stemming), since every
    stored representation contains the unstemmed tokens. A term the
    language analyzer drops entirely, such as a stopword, is kept in its
    ``fallback`` form. Pure punctuation yields no term. A leading minus
    marks an exclusion only when a letter follows it.
    """
    required: List[QueryTerm] = []
    excluded: List[QueryTerm] = []
    for raw in query.split():
        negated = raw.startswith("-") and len(raw) > 1 and raw[1].isalpha()
        if negated:
            raw = raw[1:]
        prefix = raw.endswith("*")
        words = raw.rstrip("*")

        if prefix:
            tokens = [t.text for t in fallback.analyze(words)]
        else:
            tokens = [t.text for t in analyzer.analyze(words)] or [
                t.text for t in fallback.analyze(words)
            ]

        target = excluded if negated else required
        for i, token in enumerate(tokens):
            # Only the last token of "foo-bar*" is a prefix
            term = QueryTerm(token, prefix=prefix and i == len(tokens) - 1)
            if term not in target:
                target.append(term)
    return ParsedQuery(required=tuple(required), excluded=tuple(excluded))


def rank_candidates(
    term_hits: Sequence[Mapping[str, Mapping[str, int]]],
    created_at: Mapping[str, datetime.datetime],
    weights: Mapping[str, float],
    checkpoint: Optional[Callable[[], None]] = None,
) -> List[RankedNote]:
    """Score candidates and order them by relevance.

    Args:
        term_hits: One mapping per query term: note_id -> {field: tf}.
        created_at: Candidate note IDs with their creation time.
        weights: Weight per field code.
        checkpoint: Called periodically; may raise to abort ranking.

    Returns:
        Candidates by score desc, then created_at desc, then id desc.
    """
    ranked = []
    for i, (note_id, created) in enumerate(created_at.items()):
        if checkpoint is not None and i % _CHECK_INTERVAL == 0:
            checkpoint()
        score = 0.0
        for hits in term_hits:
            for field, tf in hits.get(note_id, {}).items():
                score += weights.get(field, 0.0) * tf
        ranked.append(RankedNote(note_id, round(score, 6), created))
    ranked.sort(key=lambda r: (r.score, r.created_at, r.note_id), reverse=True)
    return ranked


class CancellationGuard:
    """Raises SearchCancelledError once an event is set or a deadline passes."""

    def __init__(
        self,
        query: Optional[str] = None,
        event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.query = query
        self.event = event
        self.clock = clock
        self.deadline = clock() + timeout if timeout is not None else None

    def check(self) -> None:
        if self.event is not None and self.event.is_set():
            raise SearchCancelledError(self.query, reason="cancelled")
        if self.deadline is not None and self.clock() >= self.deadline:
            raise SearchCancelledError(self.query, reason="timed out")


def _chunks(items: Sequence[str], size: int = _IN_CHUNK_SIZE) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SearchIndex:
    """Read-only search over an owner's notes.

    Each search runs in a single deferred read transaction, so under WAL it
    sees one consistent snapshot and never waits for writers.

    Args:
        engine: SQLAlchemy engine; init_db() is used when omitted.
        registry: Analyzer registry for query analysis.
        title_weight / body_weight: Field weights; from config when omitted.
        timeout: Default search deadline in seconds; None disables it.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        registry: Optional[AnalyzerRegistry] = None,
        title_weight: Optional[float] = None,
        body_weight: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.engine = engine if engine is not None else init_db()
        self.session_factory = get_session_factory(self.engine)
        self.registry = registry or default_registry
        self.weights: Dict[str, float] = {
            WeightClass.TITLE.value: title_weight or config.title_weight,
            WeightClass.BODY.value: body_weight or config.body_weight,
        }
        self.timeout = timeout if timeout is not None else config.search_timeout_seconds

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(
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
        """Search an owner's live notes.

        Args:
            owner_id: Owner whose notes are searched; nothing else is visible.
            query: Query text; None or blank lists notes by ``sort``.
            tag_ids: Only notes carrying these tags (all of them by default).
            sort: relevance, newest or oldest. Relevance without query text
                orders by newest.
            cursor: next_cursor of the previous page.
            limit: Page size, clamped to [1, config.max_page_size].
            language: Analyze the query with this language's analyzer
                instead of the simple one.
            match_all_tags: False selects notes carrying any of the tags.
            note_filter: Language, confidence and date restrictions.
            cancel_event: Setting it aborts the search.
            timeout: Seconds before the search is aborted.

        Raises:
            ValidationError: For a malformed cursor, limit or sort order.
            SearchCancelledError: If cancelled or timed out; nothing partial
                is returned.
            SearchError: If the storage read fails.
        """
        sort = self._coerce_sort(sort)
        limit = self._clamp_limit(limit)
        text = (query or "").strip()
        analyzer = self.registry.get(language) if language else self.registry.default
        parsed = parse_query(text, analyzer, self.registry.default)
        if max(len(parsed.required), len(parsed.excluded)) > MAX_QUERY_TERMS:
            logger.debug(
                f"Query has more than {MAX_QUERY_TERMS} terms per polarity; "
                f"planning the first {MAX_QUERY_TERMS}"
            )
            parsed = ParsedQuery(
                required=parsed.required[:MAX_QUERY_TERMS],
                excluded=parsed.excluded[:MAX_QUERY_TERMS],
            )
        conditions = self._filter_conditions(note_filter)

        has_query = not parsed.is_empty
        order = sort if has_query or sort != SortOrder.RELEVANCE else SortOrder.NEWEST
        position = self._decode_position(cursor, order, scored=has_query)
        tags = list(dict.fromkeys(tag_ids or []))
        guard = CancellationGuard(
            text or None,
            event=cancel_event,
            timeout=timeout if timeout is not None else self.timeout,
        )
        guard.check()

        try:
            with self.session_factory() as session:
                if has_query:
                    window = self._search_ranked(
                        session, owner_id, parsed, tags, match_all_tags,
                        conditions, order, position, limit, guard,
                    )
                else:
                    window = self._list_by_date(
                        session, owner_id, tags, match_all_tags, conditions,
                        order, position, limit,
                    )
                guard.check()
                page = self._build_page(session, owner_id, window, order, limit, has_query)
        except SQLAlchemyError as e:
            logger.error(f"Search failed for owner {owner_id}: {e}")
            raise SearchError(
                f"Search failed: {e}", query=text, code=ErrorCode.SEARCH_FAILED
            ) from e

        logger.debug(
            f"Search owner={owner_id} query='{text}' sort={order.value} "
            f"returned {len(page.items)} items (more={page.has_more})"
        )
        return page

    # ------------------------------------------------------------------
    # Planner phases
    # ------------------------------------------------------------------

    def _search_ranked(
        self,
        session: Session,
        owner_id: str,
        parsed: ParsedQuery,
        tags: List[str],
        match_all_tags: bool,
        conditions: List[Any],
        order: SortOrder,
        position: Optional[Tuple],
        limit: int,
        guard: CancellationGuard,
    ) -> List[RankedNote]:
        term_hits: List[Dict[str, Dict[str, int]]] = []
        candidates: Optional[Set[str]] = None
        for term in parsed.required:
            guard.check()
            hits = self._fetch_term_hits(session, owner_id, term)
            term_hits.append(hits)
            candidates = set(hits) if candidates is None else candidates & set(hits)
            if not candidates:
                return []

        for term in parsed.excluded:
            guard.check()
            excluded = set(self._fetch_term_hits(session, owner_id, term))
            if candidates is None:
                # Only exclusions: start from every live note of the owner
                candidates = set(
                    session.scalars(
                        select(DBNote.id).where(
                            DBNote.owner_id == owner_id, DBNote.deleted_at.is_(None)
                        )
                    ).all()
                )
            candidates -= excluded

        if tags and candidates:
            guard.check()
            candidates &= set(
                session.scalars(self._tag_filter(owner_id, tags, match_all_tags)).all()
            )
        if not candidates:
            return []

        guard.check()
        created_at = self._fetch_created_at(
            session, owner_id, sorted(candidates), conditions
        )
        ranked = rank_candidates(term_hits, created_at, self.weights, guard.check)

        if order == SortOrder.NEWEST:
            ranked.sort(key=lambda r: (r.created_at, r.note_id), reverse=True)
        elif order == SortOrder.OLDEST:
            ranked.sort(key=lambda r: (r.created_at, r.note_id))

        if position is not None:
            ranked = [r for r in ranked if self._is_after(r, position, order)]
        return ranked[: limit + 1]

    def _fetch_term_hits(
        self, session: Session, owner_id: str, term: QueryTerm
    ) -> Dict[str, Dict[str, int]]:
        """note_id -> {field: tf} for one query term, owner-scoped."""
        stmt = select(
            DBSearchTerm.note_id, DBSearchTerm.field, DBSearchTerm.term_frequency
        ).where(DBSearchTerm.owner_id == owner_id)
        if term.prefix:
            pattern = escape_like_pattern(term.token) + "%"
            stmt = stmt.where(DBSearchTerm.token.like(pattern, escape="\\"))
        else:
            stmt = stmt.where(DBSearchTerm.token == term.token)

        # A prefix can match both the stemmed and the surface form of one
        # word; the best-matching token per field counts once
        hits: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for note_id, field, tf in session.execute(stmt):
            hits[note_id][field] = max(hits[note_id][field], tf)
        return {note_id: dict(fields) for note_id, fields in hits.items()}

    @staticmethod
    def _fetch_created_at(
        session: Session,
        owner_id: str,
        note_ids: Sequence[str],
        conditions: Sequence[Any] = (),
    ) -> Dict[str, datetime.datetime]:
        """Creation times of the live candidates that pass the note filter."""
        created: Dict[str, datetime.datetime] = {}
        for chunk in _chunks(note_ids):
            rows = session.execute(
                select(DBNote.id, DBNote.created_at).where(
                    DBNote.id.in_(chunk),
                    DBNote.owner_id == owner_id,
                    DBNote.deleted_at.is_(None),
                    *conditions,
                )
            ).all()
            created.update({note_id: created_at for note_id, created_at in rows})
        return created

    @staticmethod
    def _filter_conditions(note_filter: Optional[NoteFilter]) -> List[Any]:
        """SQL conditions on DBNote for a NoteFilter."""
        if note_filter is None or not note_filter.has_filters:
            return []
        conditions: List[Any] = []
        if note_filter.languages:
            conditions.append(DBNote.language_code.in_(note_filter.languages))
        if note_filter.min_language_confidence is not None:
            conditions.append(
                DBNote.language_confidence >= note_filter.min_language_confidence
            )
        for column, lower, upper in (
            (DBNote.created_at, note_filter.created_after, note_filter.created_before),
            (DBNote.updated_at, note_filter.updated_after, note_filter.updated_before),
        ):
            if lower is not None:
                conditions.append(column > to_db_time(lower))
            if upper is not None:
                conditions.append(column < to_db_time(upper))
        return conditions

    @staticmethod
    def _tag_filter(owner_id: str, tags: List[str], match_all: bool):
        """Select note IDs carrying all (or any) of the owner's given tags."""
        stmt = (
            select(note_tags.c.note_id)
            .join(DBTag, DBTag.id == note_tags.c.tag_id)
            .where(DBTag.owner_id == owner_id, note_tags.c.tag_id.in_(tags))
            .group_by(note_tags.c.note_id)
        )
        if match_all:
            stmt = stmt.having(func.count(note_tags.c.tag_id) == len(tags))
        return stmt

    def _list_by_date(
        self,
        session: Session,
        owner_id: str,
        tags: List[str],
        match_all_tags: bool,
        conditions: List[Any],
        order: SortOrder,
        position: Optional[Tuple],
        limit: int,
    ) -> List[RankedNote]:
        """Keyset-paginated listing without query text."""
        stmt = select(DBNote.id, DBNote.created_at).where(
            DBNote.owner_id == owner_id, DBNote.deleted_at.is_(None), *conditions
        )
        if tags:
            stmt = stmt.where(DBNote.id.in_(self._tag_filter(owner_id, tags, match_all_tags)))

        if order == SortOrder.OLDEST:
            if position is not None:
                created, note_id = position
                stmt = stmt.where(
                    or_(
                        DBNote.created_at > created,
                        and_(DBNote.created_at == created, DBNote.id > note_id),
                    )
                )
            stmt = stmt.order_by(DBNote.created_at.asc(), DBNote.id.asc())
        else:
            if position is not None:
                created, note_id = position
                stmt = stmt.where(
                    or_(
                        DBNote.created_at < created,
                        and_(DBNote.created_at == created, DBNote.id < note_id),
                    )
                )
            stmt = stmt.order_by(DBNote.created_at.desc(), DBNote.id.desc())

        rows = session.execute(stmt.limit(limit + 1)).all()
        return [RankedNote(note_id, 0.0, created) for note_id, created in rows]

    def _build_page(
        self,
        session: Session,
        owner_id: str,
        window: List[RankedNote],
        order: SortOrder,
        limit: int,
        scored: bool,
    ) -> SearchPage:
        page = window[:limit]
        if not page:
            return SearchPage()
        ids = [r.note_id for r in page]

        db_notes = {
            n.id: n
            for n in session.scalars(select(DBNote).where(DBNote.id.in_(ids))).all()
        }
        tag_rows = session.execute(
            select(note_tags.c.note_id, note_tags.c.tag_id)
            .join(DBTag, DBTag.id == note_tags.c.tag_id)
            .where(note_tags.c.note_id.in_(ids), DBTag.owner_id == owner_id)
            .order_by(note_tags.c.note_id, DBTag.name_key)
        ).all()
        tags_by_note: Dict[str, List[str]] = defaultdict(list)
        for note_id, tag_id in tag_rows:
            tags_by_note[note_id].append(tag_id)

        items = [
            SearchHit(
                note=note_from_db(db_notes[r.note_id]).summary(tags_by_note[r.note_id]),
                rank=r.score,
            )
            for r in page
        ]
        next_cursor = None
        if len(window) > limit:
            next_cursor = self._encode_position(page[-1], order, scored)
        return SearchPage(items=items, next_cursor=next_cursor)

    # ------------------------------------------------------------------
    # Cursors and arguments
    # ------------------------------------------------------------------

    @staticmethod
    def _is_after(ranked: RankedNote, position: Tuple, order: SortOrder) -> bool:
        if order == SortOrder.RELEVANCE:
            return (ranked.score, ranked.created_at, ranked.note_id) < position
        if order == SortOrder.NEWEST:
            return (ranked.created_at, ranked.note_id) < position
        return (ranked.created_at, ranked.note_id) > position

    @staticmethod
    def _encode_position(last: RankedNote, order: SortOrder, scored: bool) -> str:
        payload: Dict[str, Any] = {
            "o": order.value,
            "c": last.created_at.isoformat(),
            "i": last.note_id,
        }
        if scored and order == SortOrder.RELEVANCE:
            payload["s"] = last.score
        return encode_cursor(payload)

    @staticmethod
    def _decode_position(
        cursor: Optional[str], order: SortOrder, scored: bool
    ) -> Optional[Tuple]:
        """Turn a cursor into the sort key of the last item already returned."""
        if cursor is None:
            return None
        try:
            if not isinstance(cursor, str) or not cursor:
                raise ValueError("cursor must be a non-empty string")
            payload = decode_cursor(cursor)
            if payload.get("o") != order.value:
                raise ValueError("cursor belongs to a different sort order")
            created = datetime.datetime.fromisoformat(payload["c"])
            note_id = payload["i"]
            if not isinstance(note_id, str):
                raise ValueError("cursor id must be a string")
            if scored and order == SortOrder.RELEVANCE:
                score = payload["s"]
                if isinstance(score, bool) or not isinstance(score, (int, float)):
                    raise ValueError("cursor score must be a number")
                return (float(score), created, note_id)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Invalid cursor: {e}",
                field="cursor",
                value=cursor,
                code=ErrorCode.SEARCH_INVALID_CURSOR,
            ) from e
        return (created, note_id)

    @staticmethod
    def _coerce_sort(sort: Union[SortOrder, str]) -> SortOrder:
        try:
            return SortOrder(sort)
        except ValueError as e:
            raise ValidationError(
                f"Unknown sort order: {sort}",
                field="sort",
                value=sort,
                code=ErrorCode.SEARCH_INVALID_QUERY,
            ) from e

    @staticmethod
    def _clamp_limit(limit: Optional[int]) -> int:
        if limit is None:
            return config.default_page_size
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError("Limit must be an integer", field="limit", value=limit)
        return max(1, min(limit, config.max_page_size))
