"""Storage layer for notecore."""

from notecore.storage.index_maintainer import IndexMaintainer
from notecore.storage.note_repository import NoteRepository
from notecore.storage.search_index import SearchIndex
from notecore.storage.tag_repository import TagRepository

__all__ = [
    "IndexMaintainer",
    "NoteRepository",
    "SearchIndex",
    "TagRepository",
]
