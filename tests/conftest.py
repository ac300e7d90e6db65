"""Common test fixtures for notecore."""

import datetime
import tempfile
from datetime import timezone
from pathlib import Path

import pytest

from notecore.config import config
from notecore.models.db_models import init_db
from notecore.services.note_service import NoteService
from notecore.storage.index_maintainer import IndexMaintainer
from notecore.storage.note_repository import NoteRepository
from notecore.storage.search_index import SearchIndex
from notecore.storage.tag_repository import TagRepository


class FakeClock:
    """Deterministic clock: every call returns a strictly later time."""

    def __init__(
        self,
        start: datetime.datetime = datetime.datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc),
        step: datetime.timedelta = datetime.timedelta(minutes=1),
    ):
        self.current = start
        self.step = step

    def __call__(self) -> datetime.datetime:
        value = self.current
        self.current += self.step
        return value


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Point the global config at the temporary database (auto-restored)."""
    monkeypatch.setattr(config, "database_path", temp_db_dir / "test_notecore.db")
    monkeypatch.setattr(config, "search_timeout_seconds", None)
    yield config


@pytest.fixture
def engine(test_config):
    """A fresh engine with the schema created."""
    database_path = test_config.get_absolute_path(test_config.database_path)
    engine = init_db(f"sqlite:///{database_path}", busy_timeout=30)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def maintainer():
    return IndexMaintainer()


@pytest.fixture
def note_repository(engine, maintainer):
    """Create a test note repository."""
    return NoteRepository(engine=engine, maintainer=maintainer)


@pytest.fixture
def tag_repository(engine, maintainer):
    """Create a test tag repository."""
    return TagRepository(engine=engine, maintainer=maintainer)


@pytest.fixture
def search_index(engine):
    return SearchIndex(engine=engine)


@pytest.fixture
def note_service(engine, note_repository, tag_repository, search_index, maintainer, clock):
    """Create a NoteService sharing the test engine, with a fake clock."""
    return NoteService(
        engine=engine,
        note_repository=note_repository,
        tag_repository=tag_repository,
        search_index=search_index,
        maintainer=maintainer,
        clock=clock,
    )
