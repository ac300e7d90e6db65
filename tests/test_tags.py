"""Tests for the tag catalog, note-tag associations and integrity checks."""
import datetime

import pytest
from sqlalchemy import delete, insert, select, update

from notecore.exceptions import (
    ConflictError,
    ErrorCode,
    IntegrityViolation,
    NoteNotFoundError,
    TagNotFoundError,
    ValidationError,
)
from notecore.models.db_models import DBSearchTerm, DBTag, note_tags

OWNER = "owner-a"


def _execute(engine, stmt):
    """Run a statement behind the repositories' backs."""
    with engine.begin() as conn:
        conn.execute(stmt)


def _associations(engine, tag_id):
    with engine.connect() as conn:
        rows = conn.execute(
            select(note_tags.c.note_id, note_tags.c.auto_tagged, note_tags.c.tagged_at)
            .where(note_tags.c.tag_id == tag_id)
            .order_by(note_tags.c.note_id)
        ).all()
    return {note_id: (bool(auto), tagged_at) for note_id, auto, tagged_at in rows}


class TestCatalog:
    """Creating, renaming, updating and deleting tags."""

    def test_create_with_defaults(self, note_service):
        tag = note_service.create_tag(OWNER, "  Groceries  ")
        assert tag.name == "Groceries"
        assert tag.color == "#21409A"
        assert tag.usage_count == 0
        assert tag.icon is None
        assert note_service.get_tag(OWNER, tag.id) == tag

    def test_create_with_presentation_fields(self, note_service):
        tag = note_service.create_tag(
            OWNER, "Ideas", color="#ff8800", icon="💡", description="Shower thoughts"
        )
        assert tag.color == "#FF8800"
        assert tag.display_name == "💡 Ideas"
        assert tag.description == "Shower thoughts"

    def test_name_conflict_ignores_case(self, note_service):
        note_service.create_tag(OWNER, "Groceries")
        with pytest.raises(ConflictError) as exc_info:
            note_service.create_tag(OWNER, "GROCERIES")
        assert exc_info.value.code == ErrorCode.TAG_NAME_CONFLICT
        assert len(note_service.list_tags(OWNER)) == 1

    def test_same_name_for_another_owner(self, note_service):
        mine = note_service.create_tag(OWNER, "Groceries")
        theirs = note_service.create_tag("owner-b", "groceries")
        assert mine.id != theirs.id
        assert note_service.list_tags("owner-b") == [theirs]

    def test_name_length_limit(self, note_service):
        assert len(note_service.create_tag(OWNER, "x" * 50).name) == 50
        with pytest.raises(ValidationError) as exc_info:
            note_service.create_tag(OWNER, "y" * 51)
        assert exc_info.value.code == ErrorCode.TAG_INVALID

    @pytest.mark.parametrize("name", ["", "   ", "\n\t"])
    def test_blank_name(self, note_service, name):
        with pytest.raises(ValidationError):
            note_service.create_tag(OWNER, name)

    @pytest.mark.parametrize("color", ["red", "#12345", "#GGGGGG", "21409A"])
    def test_bad_color(self, note_service, color):
        with pytest.raises(ValidationError):
            note_service.create_tag(OWNER, "work", color=color)

    def test_get_by_name_ignores_case(self, note_service):
        tag = note_service.create_tag(OWNER, "Work")
        assert note_service.tags.get_tag_by_name(OWNER, " WORK ") == tag
        assert note_service.tags.get_tag_by_name("owner-b", "work") is None

    def test_rename(self, note_service):
        tag = note_service.create_tag(OWNER, "groceries")
        renamed = note_service.rename_tag(OWNER, tag.id, "Shopping")
        assert renamed.name == "Shopping"
        assert note_service.tags.get_tag_by_name(OWNER, "groceries") is None

    def test_rename_casing_of_own_name(self, note_service):
        tag = note_service.create_tag(OWNER, "groceries")
        assert note_service.rename_tag(OWNER, tag.id, "Groceries").name == "Groceries"

    def test_rename_onto_existing_name(self, note_service):
        note_service.create_tag(OWNER, "work")
        tag = note_service.create_tag(OWNER, "job")
        with pytest.raises(ConflictError):
            note_service.rename_tag(OWNER, tag.id, "Work")
        assert note_service.get_tag(OWNER, tag.id).name == "job"

    def test_rename_missing_tag(self, note_service):
        with pytest.raises(TagNotFoundError):
            note_service.rename_tag(OWNER, "missing", "anything")

    def test_update_fields(self, note_service):
        tag = note_service.create_tag(OWNER, "work", icon="💼", description="Job stuff")

        updated = note_service.update_tag(OWNER, tag.id, color="#00aa00")
        assert updated.color == "#00AA00"
        assert updated.icon == "💼"
        assert updated.description == "Job stuff"

        cleared = note_service.update_tag(OWNER, tag.id, icon="", description="")
        assert cleared.icon is None
        assert cleared.description is None
        assert cleared.color == "#00AA00"

    def test_update_other_owners_tag(self, note_service):
        tag = note_service.create_tag("owner-b", "work")
        with pytest.raises(TagNotFoundError):
            note_service.update_tag(OWNER, tag.id, color="#000000")

    def test_delete_removes_associations(self, note_service):
        note = note_service.upsert_note(OWNER, "tagged note")
        tag = note_service.create_tag(OWNER, "work")
        note_service.add_tag_to_note(OWNER, note.id, tag.id)

        note_service.delete_tag(OWNER, tag.id)

        assert note_service.get_tag(OWNER, tag.id) is None
        assert note_service.get_tags_for_note(OWNER, note.id) == []
        assert note_service.search_notes(OWNER, tag_ids=[tag.id]).items == []

    def test_delete_is_idempotent(self, note_service):
        tag = note_service.create_tag(OWNER, "work")
        assert note_service.tags.delete_tag(OWNER, tag.id)
        assert not note_service.tags.delete_tag(OWNER, tag.id)
        note_service.delete_tag(OWNER, "never-existed")

    def test_delete_other_owners_tag_is_ignored(self, note_service):
        tag = note_service.create_tag("owner-b", "work")
        assert not note_service.tags.delete_tag(OWNER, tag.id)
        assert note_service.get_tag("owner-b", tag.id) is not None


class TestAssociations:
    """Attaching and detaching tags keeps usage_count exact."""

    def test_add_and_remove_are_idempotent(self, note_service):
        note = note_service.upsert_note(OWNER, "a note")
        tag = note_service.create_tag(OWNER, "work")

        assert note_service.add_tag_to_note(OWNER, note.id, tag.id)
        assert not note_service.add_tag_to_note(OWNER, note.id, tag.id)
        assert note_service.get_tag(OWNER, tag.id).usage_count == 1

        assert note_service.remove_tag_from_note(OWNER, note.id, tag.id)
        assert not note_service.remove_tag_from_note(OWNER, note.id, tag.id)
        assert note_service.get_tag(OWNER, tag.id).usage_count == 0
        assert note_service.check_integrity(OWNER).is_clean

    def test_missing_note(self, note_service):
        tag = note_service.create_tag(OWNER, "work")
        with pytest.raises(NoteNotFoundError):
            note_service.add_tag_to_note(OWNER, "missing", tag.id)
        with pytest.raises(NoteNotFoundError):
            note_service.remove_tag_from_note(OWNER, "missing", tag.id)

    def test_deleted_note(self, note_service):
        note = note_service.upsert_note(OWNER, "gone soon")
        tag = note_service.create_tag(OWNER, "work")
        note_service.delete_note(OWNER, note.id)
        with pytest.raises(NoteNotFoundError):
            note_service.add_tag_to_note(OWNER, note.id, tag.id)

    def test_missing_tag(self, note_service):
        note = note_service.upsert_note(OWNER, "a note")
        with pytest.raises(TagNotFoundError):
            note_service.add_tag_to_note(OWNER, note.id, "missing")

    def test_cross_owner_association_rejected(self, note_service):
        note = note_service.upsert_note(OWNER, "a note")
        foreign = note_service.create_tag("owner-b", "work")
        with pytest.raises(TagNotFoundError):
            note_service.add_tag_to_note(OWNER, note.id, foreign.id)
        with pytest.raises(NoteNotFoundError):
            note_service.add_tag_to_note("owner-b", note.id, foreign.id)

    def test_auto_tagged_flag_is_stored(self, note_service, engine):
        note = note_service.upsert_note(OWNER, "a note")
        tag = note_service.create_tag(OWNER, "work")
        note_service.add_tag_to_note(OWNER, note.id, tag.id, auto_tagged=True)
        assert _associations(engine, tag.id)[note.id][0] is True

    def test_list_orders(self, note_service):
        notes = [note_service.upsert_note(OWNER, f"note {i}") for i in range(2)]
        tags = {name: note_service.create_tag(OWNER, name) for name in ("b", "A", "c", "d")}
        note_service.add_tag_to_note(OWNER, notes[0].id, tags["b"].id)
        note_service.add_tag_to_note(OWNER, notes[1].id, tags["b"].id)
        note_service.add_tag_to_note(OWNER, notes[0].id, tags["c"].id)
        note_service.add_tag_to_note(OWNER, notes[1].id, tags["A"].id)

        assert [t.name for t in note_service.list_tags(OWNER)] == ["b", "A", "c", "d"]
        assert [t.name for t in note_service.get_tags_for_note(OWNER, notes[0].id)] == ["b", "c"]
        assert note_service.get_note_ids_for_tag(OWNER, tags["b"].id) == sorted(n.id for n in notes)


class TestMergeTags:
    """Merging source tags into a target."""

    @pytest.fixture
    def scenario(self, note_service):
        n1 = note_service.upsert_note(OWNER, "first")
        n2 = note_service.upsert_note(OWNER, "second")
        n3 = note_service.upsert_note(OWNER, "third")
        n4 = note_service.upsert_note(OWNER, "fourth")
        s1 = note_service.create_tag(OWNER, "todo")
        s2 = note_service.create_tag(OWNER, "to-do")
        target = note_service.create_tag(OWNER, "tasks")
        note_service.add_tag_to_note(OWNER, n1.id, s1.id, auto_tagged=True)
        note_service.add_tag_to_note(OWNER, n2.id, s1.id)
        note_service.add_tag_to_note(OWNER, n2.id, s2.id, auto_tagged=True)
        note_service.add_tag_to_note(OWNER, n3.id, s2.id)
        note_service.add_tag_to_note(OWNER, n3.id, target.id)
        return {"notes": (n1, n2, n3, n4), "sources": (s1, s2), "target": target}

    def test_merge(self, note_service, engine, scenario):
        n1, n2, n3, n4 = scenario["notes"]
        s1, s2 = scenario["sources"]
        target = scenario["target"]
        s1_times = _associations(engine, s1.id)

        affected = note_service.merge_tags(OWNER, [s1.id, s2.id], target.id)

        assert affected == 3
        assert note_service.get_tag(OWNER, s1.id) is None
        assert note_service.get_tag(OWNER, s2.id) is None
        assert note_service.get_tag(OWNER, target.id).usage_count == 3

        rows = _associations(engine, target.id)
        assert set(rows) == {n1.id, n2.id, n3.id}
        # Auto only when every source association of the note was auto
        assert rows[n1.id][0] is True
        assert rows[n2.id][0] is False
        assert rows[n3.id][0] is False
        # Earliest tagging time wins
        assert rows[n2.id][1] == s1_times[n2.id][1]
        assert note_service.check_integrity(OWNER).is_clean

    def test_target_among_sources(self, note_service, scenario):
        target = scenario["target"]
        with pytest.raises(ConflictError) as exc_info:
            note_service.merge_tags(OWNER, [target.id], target.id)
        assert exc_info.value.code == ErrorCode.TAG_MERGE_CONFLICT

    def test_no_sources(self, note_service, scenario):
        with pytest.raises(ValidationError):
            note_service.merge_tags(OWNER, [], scenario["target"].id)

    def test_missing_source_changes_nothing(self, note_service, scenario):
        s1, _ = scenario["sources"]
        target = scenario["target"]
        with pytest.raises(TagNotFoundError):
            note_service.merge_tags(OWNER, [s1.id, "missing"], target.id)
        assert note_service.get_tag(OWNER, s1.id).usage_count == 2
        assert note_service.get_tag(OWNER, target.id).usage_count == 1

    def test_missing_target(self, note_service, scenario):
        s1, _ = scenario["sources"]
        with pytest.raises(TagNotFoundError):
            note_service.merge_tags(OWNER, [s1.id], "missing")


class TestIntegrity:
    """Drift detection and repair."""

    def test_clean_store(self, note_service):
        note = note_service.upsert_note(OWNER, "all good here")
        tag = note_service.create_tag(OWNER, "fine")
        note_service.add_tag_to_note(OWNER, note.id, tag.id)
        report = note_service.check_integrity(OWNER)
        assert report.is_clean
        assert report.to_dict()["clean"] is True

    def test_usage_count_drift(self, note_service, engine):
        note = note_service.upsert_note(OWNER, "drifting")
        tag = note_service.create_tag(OWNER, "drift")
        note_service.add_tag_to_note(OWNER, note.id, tag.id)
        _execute(engine, update(DBTag).where(DBTag.id == tag.id).values(usage_count=5))

        report = note_service.check_integrity(OWNER)
        assert report.usage_count_drift == {tag.id: (5, 1)}

        repaired = note_service.repair_integrity(OWNER)
        assert repaired.repaired
        assert repaired.usage_count_drift == {tag.id: (5, 1)}
        assert note_service.get_tag(OWNER, tag.id).usage_count == 1
        assert note_service.check_integrity(OWNER).is_clean

    def test_orphaned_association(self, note_service, engine):
        note = note_service.upsert_note(OWNER, "deleted later")
        tag = note_service.create_tag(OWNER, "orphan")
        note_service.delete_note(OWNER, note.id)
        _execute(engine, insert(note_tags).values(
            note_id=note.id, tag_id=tag.id,
            tagged_at=datetime.datetime(2024, 1, 1), auto_tagged=False,
        ))

        report = note_service.check_integrity(OWNER)
        assert report.orphaned_associations == [(note.id, tag.id)]

        note_service.repair_integrity(OWNER)
        assert note_service.check_integrity(OWNER).is_clean
        assert _associations(engine, tag.id) == {}

    def test_unindexed_note(self, note_service, engine):
        note = note_service.upsert_note(OWNER, "lost representation")
        _execute(engine, delete(DBSearchTerm).where(DBSearchTerm.note_id == note.id))

        assert note_service.check_integrity(OWNER).unindexed_note_ids == [note.id]
        assert note_service.search_notes(OWNER, "lost").items == []

        note_service.repair_integrity(OWNER)
        assert note_service.search_notes(OWNER, "lost").note_ids == [note.id]

    def test_negative_usage_count_is_refused(self, note_service, engine, caplog):
        note = note_service.upsert_note(OWNER, "counter trouble")
        tag = note_service.create_tag(OWNER, "broken")
        note_service.add_tag_to_note(OWNER, note.id, tag.id)
        _execute(engine, update(DBTag).where(DBTag.id == tag.id).values(usage_count=0))

        with pytest.raises(IntegrityViolation) as exc_info:
            note_service.remove_tag_from_note(OWNER, note.id, tag.id)
        assert exc_info.value.code == ErrorCode.INTEGRITY_VIOLATION
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

        # The transaction rolled back: the association is still there
        assert [t.id for t in note_service.get_tags_for_note(OWNER, note.id)] == [tag.id]
        assert note_service.get_tag(OWNER, tag.id).usage_count == 0

    def test_checks_are_owner_scoped(self, note_service, engine):
        note = note_service.upsert_note("owner-b", "theirs")
        tag = note_service.create_tag("owner-b", "theirs")
        note_service.add_tag_to_note("owner-b", note.id, tag.id)
        _execute(engine, update(DBTag).where(DBTag.id == tag.id).values(usage_count=9))

        assert note_service.check_integrity(OWNER).is_clean
        assert not note_service.check_integrity("owner-b").is_clean
