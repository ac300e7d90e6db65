"""Derived search representation for notes.

The maintainer computes a note's weighted token multiset and writes it in
the caller's session, so the representation commits or rolls back together
with the note row it belongs to.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session

from notecore.config import config
from notecore.models.db_models import DBNote, DBSearchTerm
from notecore.models.schema import WeightClass
from notecore.text.analyzers import AnalyzerRegistry, Token, default_registry
from notecore.text.language import DetectedLanguage, LanguageDetector

logger = logging.getLogger(__name__)

TermKey = Tuple[WeightClass, str]


@dataclass(frozen=True)
class IndexedText:
    """Analysis result for one note.

    Attributes:
        language: Detector output for title + body.
        analyzer: Name of the analyzer chosen for the note.
        terms: (weight class, token) -> term frequency.
    """

    language: DetectedLanguage
    analyzer: str
    terms: Dict[TermKey, int]

    def tokens(self, weight_class: WeightClass) -> Dict[str, int]:
        return {tok: tf for (wc, tok), tf in self.terms.items() if wc == weight_class}


class IndexMaintainer:
    """Builds and persists note search representations.

    Args:
        registry: Analyzer registry; the module default when omitted.
        detector: Language detector; built from config when omitted.
    """

    def __init__(
        self,
        registry: Optional[AnalyzerRegistry] = None,
        detector: Optional[LanguageDetector] = None,
    ) -> None:
        self.registry = registry or default_registry
        self.detector = detector or LanguageDetector(
            min_length=config.min_detection_length
        )

    def build(self, title: Optional[str], body: str) -> IndexedText:
        """Detect the language and analyze title (A) and body (B).

        Tokens of the universal simple analyzer are merged into every
        representation; for a (field, token) produced by both passes the
        larger frequency is kept.
        """
        text = f"{title}\n{body}" if title else body
        detected = self.detector.detect(text)
        analyzer = self.registry.get(detected.code)

        terms: Counter = Counter()
        for weight_class, source in (
            (WeightClass.TITLE, title or ""),
            (WeightClass.BODY, body),
        ):
            terms.update(self._count(analyzer.analyze(source, weight_class)))
            if analyzer is not self.registry.default:
                simple = self._count(self.registry.default.analyze(source, weight_class))
                for key, tf in simple.items():
                    if tf > terms[key]:
                        terms[key] = tf

        return IndexedText(language=detected, analyzer=analyzer.name, terms=dict(terms))

    @staticmethod
    def _count(tokens: List[Token]) -> Counter:
        return Counter((t.weight_class, t.text) for t in tokens)

    def write(
        self, session: Session, note_id: str, owner_id: str, indexed: IndexedText
    ) -> int:
        """Replace the stored representation of a note. Returns rows written."""
        self.purge(session, note_id)
        rows = [
            {
                "note_id": note_id,
                "owner_id": owner_id,
                "field": weight_class.value,
                "token": token,
                "term_frequency": tf,
            }
            for (weight_class, token), tf in sorted(
                indexed.terms.items(), key=lambda item: (item[0][0].value, item[0][1])
            )
        ]
        if rows:
            session.execute(insert(DBSearchTerm), rows)
        return len(rows)

    @staticmethod
    def purge(session: Session, note_id: str) -> int:
        """Delete the stored representation of a note."""
        result = session.execute(
            delete(DBSearchTerm).where(DBSearchTerm.note_id == note_id)
        )
        return result.rowcount or 0

    def reindex_owner(self, session: Session, owner_id: str) -> int:
        """Recompute language and representation for all live notes of an owner.

        Returns:
            Number of notes reindexed.
        """
        db_notes = session.scalars(
            select(DBNote).where(
                DBNote.owner_id == owner_id, DBNote.deleted_at.is_(None)
            )
        ).all()
        for db_note in db_notes:
            indexed = self.build(db_note.title, db_note.body)
            db_note.language_code = indexed.language.code
            db_note.language_confidence = indexed.language.confidence
            db_note.analyzer = indexed.analyzer
            self.write(session, db_note.id, owner_id, indexed)
        logger.info(f"Reindexed {len(db_notes)} notes for owner {owner_id}")
        return len(db_notes)
