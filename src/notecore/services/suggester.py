"""Heuristic tag suggestions for a note.

Suggestions are computed from the note text, the owner's catalog and the
capture time. Nothing here touches storage; applying a suggestion is an
explicit caller action (see NoteService.accept_suggestion).
"""
import datetime
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from notecore.models.schema import SuggestedTag, SuggestionReason, Tag
from notecore.text.analyzers import fold_diacritics, split_words
from notecore.utils import normalize_tag_key

MAX_CONFIDENCE = 0.95
CATALOG_MATCH_CONFIDENCE = 0.6
TIME_OF_DAY_CONFIDENCE = 0.3
# Each additional keyword hit adds this much, up to MAX_CONFIDENCE
_EXTRA_HIT_BONUS = 0.05


@dataclass(frozen=True)
class KeywordClass:
    """A pattern class: any of its keywords suggests ``tag_name``."""

    tag_name: str
    reason: SuggestionReason
    base_confidence: float
    keywords: FrozenSet[str]


def _keywords(text: str) -> FrozenSet[str]:
    # Stored folded so "für" and "fur" both hit
    return frozenset(fold_diacritics(w) for w in text.split())


KEYWORD_CLASSES: Sequence[KeywordClass] = (
    KeywordClass(
        tag_name="urgent",
        reason=SuggestionReason.URGENCY,
        base_confidence=0.85,
        keywords=_keywords(
            "urgent urgently asap immediately critical deadline emergency "
            "dringend sofort eilig umgehend kritisch frist notfall"
        ),
    ),
    KeywordClass(
        tag_name="todo",
        reason=SuggestionReason.ACTION,
        base_confidence=0.8,
        keywords=_keywords(
            "todo task tasks buy call email fix finish send remember must "
            "need submit pay book "
            "aufgabe aufgaben erledigen kaufen anrufen besorgen schicken "
            "senden bezahlen erinnern muss müssen abgeben buchen"
        ),
    ),
    KeywordClass(
        tag_name="idea",
        reason=SuggestionReason.IDEATION,
        base_confidence=0.75,
        keywords=_keywords(
            "idea ideas maybe brainstorm concept imagine invent perhaps "
            "idee ideen vielleicht konzept einfall brainstorming überlegen "
            "erfinden"
        ),
    ),
    KeywordClass(
        tag_name="planning",
        reason=SuggestionReason.TEMPORAL,
        base_confidence=0.7,
        keywords=_keywords(
            "tomorrow tonight schedule plan planning meeting appointment "
            "week weekend monday tuesday wednesday thursday friday saturday "
            "sunday "
            "morgen übermorgen termin planen planung besprechung woche "
            "wochenende montag dienstag mittwoch donnerstag freitag samstag "
            "sonntag"
        ),
    ),
)

# (start hour inclusive, end hour exclusive, bucket); night wraps midnight
TIME_OF_DAY_BUCKETS = (
    (5, 12, "morning"),
    (12, 17, "afternoon"),
    (17, 22, "evening"),
)
NIGHT_BUCKET = "night"


def time_of_day_bucket(moment: datetime.datetime) -> str:
    """Bucket of the wall-clock hour of ``moment``."""
    for start, end, bucket in TIME_OF_DAY_BUCKETS:
        if start <= moment.hour < end:
            return bucket
    return NIGHT_BUCKET


def _contains_phrase(words: List[str], phrase: List[str]) -> bool:
    size = len(phrase)
    return any(words[i:i + size] == phrase for i in range(len(words) - size + 1))


def suggest_tags(
    note_text: str,
    catalog: Iterable[Tag] = (),
    now: Optional[datetime.datetime] = None,
) -> List[SuggestedTag]:
    """Suggest tags for a note.

    Args:
        note_text: Title and body of the note.
        catalog: The owner's existing tags. Suggestions whose name matches
            a catalog tag (ignoring case) carry its ID; catalog tags whose
            name appears in the text are suggested as well.
        now: Capture time in the owner's local time. When given, the
            time-of-day bucket is suggested with low confidence.

    Returns:
        Suggestions ordered by confidence (highest first), then name. At
        most one suggestion per tag name.
    """
    words = split_words(note_text or "")
    if not words:
        return []
    folded = [fold_diacritics(w) for w in words]
    present = set(folded)
    by_key = {normalize_tag_key(tag.name): tag for tag in catalog}

    found: Dict[str, SuggestedTag] = {}

    def propose(name, confidence, reason, matched):
        key = normalize_tag_key(name)
        tag = by_key.get(key)
        suggestion = SuggestedTag(
            name=tag.name if tag else name,
            confidence=round(min(confidence, MAX_CONFIDENCE), 3),
            reason=reason,
            tag_id=tag.id if tag else None,
            matched_terms=sorted(matched),
        )
        current = found.get(key)
        if current is None or suggestion.confidence > current.confidence:
            found[key] = suggestion

    for keyword_class in KEYWORD_CLASSES:
        hits = present & keyword_class.keywords
        if hits:
            confidence = keyword_class.base_confidence + _EXTRA_HIT_BONUS * (len(hits) - 1)
            propose(keyword_class.tag_name, confidence, keyword_class.reason, hits)

    for key, tag in by_key.items():
        phrase = [fold_diacritics(w) for w in split_words(tag.name)]
        if phrase and _contains_phrase(folded, phrase):
            propose(tag.name, CATALOG_MATCH_CONFIDENCE, SuggestionReason.CATALOG_MATCH, phrase)

    if now is not None:
        bucket = time_of_day_bucket(now)
        propose(bucket, TIME_OF_DAY_CONFIDENCE, SuggestionReason.TIME_OF_DAY, [])

    return sorted(found.values(), key=lambda s: (-s.confidence, normalize_tag_key(s.name)))
