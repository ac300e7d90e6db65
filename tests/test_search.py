"""Tests for query planning, ranking and pagination."""
import datetime
import threading

import pydantic
import pytest

from notecore.exceptions import ErrorCode, SearchCancelledError, ValidationError
from notecore.models.schema import NoteFilter, SortOrder
from notecore.storage.search_index import (
    MAX_QUERY_TERMS,
    QueryTerm,
    parse_query,
    rank_candidates,
)
from notecore.text.analyzers import default_registry

OWNER = "owner-a"


def _collect_pages(note_service, **kwargs):
    """Follow next_cursor until the last page; returns the pages' note IDs."""
    pages = []
    cursor = None
    while True:
        page = note_service.search_notes(OWNER, cursor=cursor, **kwargs)
        pages.append(page.note_ids)
        if not page.has_more:
            return pages
        cursor = page.next_cursor


class TestParseQuery:
    """Query syntax: AND terms, prefixes and exclusions."""

    def test_terms_prefix_and_exclusion(self):
        simple = default_registry.default
        parsed = parse_query("Milk bre* -eggs", simple, simple)
        assert parsed.required == (QueryTerm("milk"), QueryTerm("bre", prefix=True))
        assert parsed.excluded == (QueryTerm("eggs"),)

    def test_language_analyzer_with_stopword_fallback(self):
        parsed = parse_query("the meetings", default_registry.get("en"), default_registry.default)
        assert parsed.required == (QueryTerm("the"), QueryTerm("meet"))

    def test_punctuation_only_is_empty(self):
        simple = default_registry.default
        assert parse_query("!!! * -", simple, simple).is_empty

    def test_duplicates_collapse(self):
        simple = default_registry.default
        assert len(parse_query("milk MILK", simple, simple).required) == 1

    @pytest.mark.parametrize("query", ["-5", "-42.5", "-#todo"])
    def test_minus_before_non_letter_is_required(self, query):
        simple = default_registry.default
        parsed = parse_query(query, simple, simple)
        assert parsed.required
        assert parsed.excluded == ()


class TestRankCandidates:
    """The pure ranker."""

    def test_scores_and_tie_breaks(self):
        t0 = datetime.datetime(2024, 1, 1)
        t1 = datetime.datetime(2024, 1, 2)
        hits = [
            {"n1": {"A": 1}, "n2": {"B": 1}, "n3": {"B": 1}, "n4": {"A": 1, "B": 2}},
        ]
        created = {"n1": t0, "n2": t0, "n3": t1, "n4": t0}
        ranked = rank_candidates(hits, created, {"A": 2.0, "B": 1.0})
        assert [r.note_id for r in ranked] == ["n4", "n1", "n3", "n2"]
        assert [r.score for r in ranked] == [4.0, 2.0, 1.0, 1.0]

    def test_checkpoint_can_abort(self):
        def abort():
            raise SearchCancelledError("q")

        with pytest.raises(SearchCancelledError):
            rank_candidates([{}], {"n1": datetime.datetime(2024, 1, 1)}, {}, abort)


class TestTextSearch:
    """Matching behaviour of query text."""

    def test_milk_in_two_languages(self, note_service):
        english = note_service.upsert_note(OWNER, "Remember to buy milk on the way home")
        german = note_service.upsert_note(OWNER, "Ich muss noch Milch kaufen und Brot holen")

        assert note_service.search_notes(OWNER, "milk").note_ids == [english.id]
        assert note_service.search_notes(OWNER, "Milch").note_ids == [german.id]

    @pytest.mark.parametrize("body, fragment", [
        ("Remember to buy milk", "to buy"),
        ("Ich muss noch Milch kaufen", "muss noch"),
        ("Le dîner de ce soir sera délicieux", "dîner de ce"),
        ("Привет, как дела? Сегодня хорошая погода", "Сегодня хорошая"),
        ("The meetings were productive", "The meetings were productive"),
    ])
    def test_word_aligned_substring_finds_note(self, note_service, body, fragment):
        note = note_service.upsert_note(OWNER, body)
        assert note.id in note_service.search_notes(OWNER, fragment).note_ids

    def test_title_outranks_body(self, note_service):
        titled = note_service.upsert_note(OWNER, "something else entirely here", title="Milk")
        body_only = note_service.upsert_note(OWNER, "milk is here")

        page = note_service.search_notes(OWNER, "milk")
        assert page.note_ids == [titled.id, body_only.id]
        assert [hit.rank for hit in page.items] == [2.0, 1.0]

    def test_ties_broken_by_newest(self, note_service):
        older = note_service.upsert_note(OWNER, "milk")
        newer = note_service.upsert_note(OWNER, "milk")
        assert note_service.search_notes(OWNER, "milk").note_ids == [newer.id, older.id]

    def test_all_terms_required(self, note_service):
        note_service.upsert_note(OWNER, "milk and eggs")
        both = note_service.upsert_note(OWNER, "milk and bread")
        assert note_service.search_notes(OWNER, "milk bread").note_ids == [both.id]

    def test_prefix(self, note_service):
        note = note_service.upsert_note(OWNER, "buy milk")
        note_service.upsert_note(OWNER, "buy bread")
        assert note_service.search_notes(OWNER, "mil*").note_ids == [note.id]

    def test_exclusion(self, note_service):
        note_service.upsert_note(OWNER, "milk and eggs")
        bread = note_service.upsert_note(OWNER, "milk and bread")
        tea = note_service.upsert_note(OWNER, "green tea")

        assert note_service.search_notes(OWNER, "milk -eggs").note_ids == [bread.id]
        assert note_service.search_notes(OWNER, "-eggs").note_ids == [tea.id, bread.id]

    def test_query_language(self, note_service):
        note = note_service.upsert_note(
            OWNER, "The meeting was productive and we planned the next steps"
        )
        assert note.analyzer == "en"
        assert note_service.search_notes(OWNER, "meetings").items == []
        assert note_service.search_notes(OWNER, "meetings", language="en").note_ids == [note.id]
        assert note_service.search_notes(OWNER, "the", language="en").note_ids == [note.id]

    def test_punctuation_query_lists_everything(self, note_service):
        first = note_service.upsert_note(OWNER, "alpha")
        second = note_service.upsert_note(OWNER, "beta")
        assert note_service.search_notes(OWNER, "!!!").note_ids == [second.id, first.id]

    def test_owner_isolation(self, note_service):
        mine = note_service.upsert_note(OWNER, "milk")
        note_service.upsert_note("owner-b", "milk")
        assert note_service.search_notes(OWNER, "milk").note_ids == [mine.id]
        assert note_service.search_notes(OWNER).note_ids == [mine.id]

    def test_leading_minus_before_digit_is_text(self, note_service):
        note = note_service.upsert_note(OWNER, "Temperature drops to -5 tonight")
        note_service.upsert_note(OWNER, "Mild weather tonight")
        assert note_service.search_notes(OWNER, "-5 tonight").note_ids == [note.id]

    def test_hyphenated_substring(self, note_service):
        note = note_service.upsert_note(OWNER, "Print the e-mail from the co-op before noon")
        assert note_service.search_notes(OWNER, "e-mail from the co-op").note_ids == [note.id]

    def test_long_substring_of_body(self, note_service):
        body = " ".join(
            "Tomorrow we drive to the lake early and then hike around it until lunch".split() * 3
        )
        assert len(body.split()) > 40
        note = note_service.upsert_note(OWNER, body)
        assert note_service.search_notes(OWNER, body).note_ids == [note.id]

    def test_query_with_more_terms_than_planned(self, note_service):
        body = " ".join(f"item{i}" for i in range(MAX_QUERY_TERMS + 16))
        note = note_service.upsert_note(OWNER, body)
        note_service.upsert_note(OWNER, "item0 item1 item2")
        assert note_service.search_notes(OWNER, body).note_ids == [note.id]

    def test_prefix_counts_one_occurrence_once(self, note_service):
        analyzed = note_service.upsert_note(
            OWNER, "I was running late for the meeting this morning because of the traffic"
        )
        simple = note_service.upsert_note(OWNER, "running now")
        assert analyzed.analyzer == "en"
        assert simple.analyzer == "simple"

        page = note_service.search_notes(OWNER, "run*")
        assert page.note_ids == [simple.id, analyzed.id]
        assert [hit.rank for hit in page.items] == [1.0, 1.0]

    def test_summary_fields(self, note_service):
        note = note_service.upsert_note(OWNER, "milk " * 60, title="Dairy")
        tag = note_service.create_tag(OWNER, "groceries")
        note_service.add_tag_to_note(OWNER, note.id, tag.id)

        summary = note_service.search_notes(OWNER, "milk").items[0].note
        assert summary.id == note.id
        assert summary.title == "Dairy"
        assert summary.tag_ids == [tag.id]
        assert len(summary.snippet) <= 160
        assert summary.snippet.endswith("...")


class TestSorting:
    """Sort orders with and without query text."""

    def test_newest_and_oldest_without_query(self, note_service):
        ids = [note_service.upsert_note(OWNER, f"note {i}").id for i in range(4)]
        assert note_service.search_notes(OWNER, sort=SortOrder.NEWEST).note_ids == ids[::-1]
        assert note_service.search_notes(OWNER, sort="oldest").note_ids == ids
        # Relevance without query text falls back to newest
        assert note_service.search_notes(OWNER).note_ids == ids[::-1]

    def test_date_sort_with_query(self, note_service):
        strong = note_service.upsert_note(OWNER, "milk milk milk")
        weak = note_service.upsert_note(OWNER, "milk")
        assert note_service.search_notes(OWNER, "milk").note_ids == [strong.id, weak.id]
        assert note_service.search_notes(OWNER, "milk", sort="newest").note_ids == [weak.id, strong.id]
        assert note_service.search_notes(OWNER, "milk", sort="oldest").note_ids == [strong.id, weak.id]

    def test_unknown_sort(self, note_service):
        with pytest.raises(ValidationError):
            note_service.search_notes(OWNER, sort="sideways")


class TestPagination:
    """Keyset cursors and limits."""

    def test_pages_without_query(self, note_service):
        ids = [note_service.upsert_note(OWNER, f"note {i}").id for i in range(7)]
        pages = _collect_pages(note_service, limit=3)
        assert [len(p) for p in pages] == [3, 3, 1]
        assert [i for p in pages for i in p] == ids[::-1]

    def test_pages_oldest(self, note_service):
        ids = [note_service.upsert_note(OWNER, f"note {i}").id for i in range(5)]
        pages = _collect_pages(note_service, sort="oldest", limit=2)
        assert [i for p in pages for i in p] == ids

    def test_pages_by_relevance(self, note_service):
        bodies = ["milk", "milk milk milk", "milk milk", "milk milk milk milk", "milk"]
        notes = [note_service.upsert_note(OWNER, body) for body in bodies]
        pages = _collect_pages(note_service, query="milk", limit=2)

        flat = [i for p in pages for i in p]
        expected = [notes[3].id, notes[1].id, notes[2].id, notes[4].id, notes[0].id]
        assert flat == expected
        assert [len(p) for p in pages] == [2, 2, 1]

    def test_no_duplicates_or_gaps_under_concurrent_insert(self, note_service):
        ids = [note_service.upsert_note(OWNER, f"note {i}").id for i in range(7)]
        first = note_service.search_notes(OWNER, sort="newest", limit=3)

        note_service.upsert_note(OWNER, "written between page requests")

        seen = list(first.note_ids)
        cursor = first.next_cursor
        while cursor:
            page = note_service.search_notes(OWNER, sort="newest", limit=3, cursor=cursor)
            seen.extend(page.note_ids)
            cursor = page.next_cursor
        assert seen == ids[::-1]

    def test_last_page_has_no_cursor(self, note_service):
        note_service.upsert_note(OWNER, "only one")
        page = note_service.search_notes(OWNER, limit=5)
        assert page.next_cursor is None
        assert not page.has_more

    def test_limit_is_clamped(self, note_service):
        for i in range(3):
            note_service.upsert_note(OWNER, f"note {i}")
        assert len(note_service.search_notes(OWNER, limit=0).items) == 1
        assert len(note_service.search_notes(OWNER, limit=-5).items) == 1
        assert len(note_service.search_notes(OWNER, limit=10_000).items) == 3

    def test_non_integer_limit(self, note_service):
        with pytest.raises(ValidationError):
            note_service.search_notes(OWNER, limit="ten")

    @pytest.mark.parametrize("cursor", ["not-a-cursor", "!!!", "e30"])
    def test_malformed_cursor(self, note_service, cursor):
        with pytest.raises(ValidationError) as exc_info:
            note_service.search_notes(OWNER, cursor=cursor)
        assert exc_info.value.code == ErrorCode.SEARCH_INVALID_CURSOR

    def test_cursor_from_other_sort_order(self, note_service):
        for i in range(3):
            note_service.upsert_note(OWNER, f"note {i}")
        cursor = note_service.search_notes(OWNER, sort="newest", limit=1).next_cursor
        with pytest.raises(ValidationError):
            note_service.search_notes(OWNER, sort="oldest", cursor=cursor)


class TestTagFilter:
    """Intersection by default, union on request."""

    @pytest.fixture
    def tagged(self, note_service):
        a = note_service.create_tag(OWNER, "a")
        b = note_service.create_tag(OWNER, "b")
        n1 = note_service.upsert_note(OWNER, "first milk")
        n2 = note_service.upsert_note(OWNER, "second milk")
        n3 = note_service.upsert_note(OWNER, "third")
        note_service.add_tag_to_note(OWNER, n1.id, a.id)
        note_service.add_tag_to_note(OWNER, n2.id, a.id)
        note_service.add_tag_to_note(OWNER, n2.id, b.id)
        note_service.add_tag_to_note(OWNER, n3.id, b.id)
        return a, b, n1, n2, n3

    def test_intersection(self, note_service, tagged):
        a, b, n1, n2, n3 = tagged
        assert note_service.search_notes(OWNER, tag_ids=[a.id, b.id]).note_ids == [n2.id]

    def test_union(self, note_service, tagged):
        a, b, n1, n2, n3 = tagged
        page = note_service.search_notes(OWNER, tag_ids=[a.id, b.id], match_all_tags=False)
        assert page.note_ids == [n3.id, n2.id, n1.id]

    def test_with_query(self, note_service, tagged):
        a, b, n1, n2, n3 = tagged
        assert note_service.search_notes(OWNER, "milk", tag_ids=[b.id]).note_ids == [n2.id]

    def test_other_owners_tag_matches_nothing(self, note_service, tagged):
        foreign = note_service.create_tag("owner-b", "a")
        assert note_service.search_notes(OWNER, tag_ids=[foreign.id]).items == []


def _at(minute):
    """FakeClock time of the ``minute``-th clock call."""
    return datetime.datetime(2024, 3, 4, 9, minute, tzinfo=datetime.timezone.utc)


class TestNoteFilter:
    """Language, confidence and date restrictions."""

    @pytest.fixture
    def notes(self, note_service):
        english = note_service.upsert_note(
            OWNER, "Remember to buy milk and eggs for the party on the weekend"
        )
        german = note_service.upsert_note(
            OWNER, "Ich muss heute noch Milch kaufen und frisches Brot für das Frühstück holen"
        )
        short = note_service.upsert_note(OWNER, "milk")
        assert (english.language_code, german.language_code, short.language_code) == (
            "en", "de", "und"
        )
        return english, german, short

    def test_languages(self, note_service, notes):
        english, german, short = notes
        page = note_service.search_notes(OWNER, note_filter=NoteFilter(languages=["DE", "und"]))
        assert page.note_ids == [short.id, german.id]
        page = note_service.search_notes(OWNER, "milk", note_filter=NoteFilter(languages=["en"]))
        assert page.note_ids == [english.id]

    def test_min_confidence(self, note_service, notes):
        english, german, short = notes
        note_filter = NoteFilter(min_language_confidence=0.5)
        assert note_service.search_notes(OWNER, note_filter=note_filter).note_ids == [
            german.id, english.id
        ]
        assert note_service.search_notes(OWNER, "milk", note_filter=note_filter).note_ids == [
            english.id
        ]

    def test_created_range_is_exclusive(self, note_service, notes):
        english, german, short = notes
        note_filter = NoteFilter(created_after=_at(0), created_before=_at(2))
        assert note_service.search_notes(OWNER, note_filter=note_filter).note_ids == [german.id]

    def test_updated_after(self, note_service, notes):
        english, german, short = notes
        note_service.upsert_note(OWNER, "milk and honey", note_id=english.id)
        note_filter = NoteFilter(updated_after=_at(2))
        assert note_service.search_notes(OWNER, note_filter=note_filter).note_ids == [english.id]
        assert note_service.search_notes(OWNER, "milk", note_filter=note_filter).note_ids == [
            english.id
        ]

    def test_filter_with_exclusion_only_query(self, note_service, notes):
        english, german, short = notes
        page = note_service.search_notes(
            OWNER, "-eggs", note_filter=NoteFilter(languages=["en", "de"])
        )
        assert page.note_ids == [german.id]

    def test_filter_pages(self, note_service):
        ids = [note_service.upsert_note(OWNER, f"note {i}").id for i in range(5)]
        pages = _collect_pages(
            note_service, limit=2, note_filter=NoteFilter(created_after=_at(0))
        )
        assert [i for p in pages for i in p] == ids[:0:-1]

    def test_validation(self):
        assert NoteFilter(languages=[" EN ", "en", ""]).languages == ["en"]
        assert not NoteFilter(languages=[]).has_filters
        with pytest.raises(pydantic.ValidationError):
            NoteFilter(min_language_confidence=1.5)
        with pytest.raises(pydantic.ValidationError):
            NoteFilter(created_after=_at(5), created_before=_at(5))
        with pytest.raises(pydantic.ValidationError):
            NoteFilter(updated_after=_at(6), updated_before=_at(5))


class TestCancellation:
    """Cancelled searches return nothing partial."""

    def test_cancel_event(self, note_service):
        note_service.upsert_note(OWNER, "milk")
        event = threading.Event()
        event.set()
        with pytest.raises(SearchCancelledError) as exc_info:
            note_service.search_notes(OWNER, "milk", cancel_event=event)
        assert exc_info.value.code == ErrorCode.SEARCH_CANCELLED
        assert exc_info.value.reason == "cancelled"

    def test_timeout(self, note_service):
        note_service.upsert_note(OWNER, "milk")
        with pytest.raises(SearchCancelledError) as exc_info:
            note_service.search_notes(OWNER, "milk", timeout=0)
        assert exc_info.value.reason == "timed out"

    def test_unset_event_does_not_cancel(self, note_service):
        note = note_service.upsert_note(OWNER, "milk")
        page = note_service.search_notes(OWNER, "milk", cancel_event=threading.Event())
        assert page.note_ids == [note.id]
