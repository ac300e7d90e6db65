"""
notecore - multilingual full-text search and tag organization for personal notes.

This package indexes free-form note text per language, ranks search results,
and keeps a per-owner tag catalog with exact usage statistics and heuristic
auto-tag suggestions. All persistence goes through SQLAlchemy on SQLite.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notecore")
except PackageNotFoundError:
    __version__ = "0.3.0"
