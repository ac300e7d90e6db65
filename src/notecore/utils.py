"""Utility functions for notecore."""
import base64
import binascii
import json
import unicodedata
from typing import Any, Dict


def normalize_tag_key(name: str) -> str:
    """Return the key used for case-insensitive tag name uniqueness.

    Applies NFKC normalization, trims surrounding whitespace, collapses
    inner whitespace runs and casefolds, so "Work", " work " and "WORK"
    share a key while "Wörk" stays distinct from "Work".

    Examples:
        "Groceries" -> "groceries"
        "  To  Do " -> "to do"
        "STRASSE" -> "strasse"
    """
    normalized = unicodedata.normalize("NFKC", name)
    return " ".join(normalized.split()).casefold()


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def encode_cursor(payload: Dict[str, Any]) -> str:
    """Encode a pagination position as an opaque url-safe token."""
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> Dict[str, Any]:
    """Decode a token produced by encode_cursor.

    Raises:
        ValueError: If the token is not a valid cursor.
    """
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValueError(f"Malformed cursor: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("Malformed cursor: expected an object")
    return payload
