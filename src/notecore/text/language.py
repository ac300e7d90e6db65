"""Language detection for note text.

Detection is a pure function of the input text. It never raises: text that
is too short, looks like code, or that langdetect cannot classify comes
back as UNDETERMINED, and the universal simple analyzer is used for it.
"""
import logging
import re
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional

from langdetect import DetectorFactory, LangDetectException, detect_langs
from langdetect.detector_factory import init_factory

from notecore.text.profiles import LANGUAGE_NAMES, LANGUAGE_PROFILES

logger = logging.getLogger(__name__)

UNDETERMINED = "und"

DEFAULT_MIN_LENGTH = 20

# langdetect samples n-grams randomly; a fixed seed makes results repeatable
DetectorFactory.seed = 0

# Characters that dominate source code, markup and data dumps
_STRUCTURAL_CHARS = frozenset("{}[]()<>;=|&$\\/`*#@^~")
_STRUCTURAL_DENSITY_LIMIT = 0.15

_CODE_KEYWORDS = frozenset(
    "def return import function const var let class public private void "
    "elif lambda null none true false int str bool async await select "
    "insert update delete where from begin end printf println console".split()
)
_CODE_KEYWORD_SHARE_LIMIT = 0.35
_CODE_KEYWORD_MIN_HITS = 3

_WORD_PATTERN = re.compile(r"[^\W\d_]+", re.UNICODE)

_factory_lock = threading.Lock()
_factory_loaded = False


def _load_profiles() -> None:
    """Load langdetect's language profiles once, before the first detection.

    langdetect builds its global factory lazily without locking, so
    concurrent first calls could observe a half-loaded factory.
    """
    global _factory_loaded
    if _factory_loaded:
        return
    with _factory_lock:
        if not _factory_loaded:
            init_factory()
            _factory_loaded = True


@dataclass(frozen=True)
class DetectedLanguage:
    """Detected language code with a diagnostic confidence in [0, 1]."""

    code: str
    confidence: float

    @property
    def is_determined(self) -> bool:
        return self.code != UNDETERMINED

    @property
    def is_reliable(self) -> bool:
        return self.confidence > 0.7

    @property
    def display_name(self) -> str:
        profile = LANGUAGE_PROFILES.get(self.code)
        if profile is not None:
            return profile.name
        return LANGUAGE_NAMES.get(self.code, "Unknown")


UNDETERMINED_RESULT = DetectedLanguage(code=UNDETERMINED, confidence=0.0)


def normalize_language_code(code: str) -> str:
    """Reduce a langdetect code to its ISO 639-1 part ("zh-cn" -> "zh")."""
    return code.split("-", 1)[0].lower()


class LanguageDetector:
    """langdetect-based detector guarded by length and structure checks.

    Args:
        min_length: Texts shorter than this (after stripping) are
            UNDETERMINED regardless of content.
    """

    def __init__(self, min_length: int = DEFAULT_MIN_LENGTH) -> None:
        self.min_length = min_length

    def detect(self, text: Optional[str]) -> DetectedLanguage:
        """Detect the language of ``text``."""
        sample = (text or "").strip()
        if len(sample) < self.min_length:
            return UNDETERMINED_RESULT

        if self._looks_structural(sample):
            logger.debug("Text looks like code or data; language left undetermined")
            return UNDETERMINED_RESULT

        _load_profiles()
        try:
            candidates = detect_langs(sample)
        except LangDetectException as e:
            logger.debug(f"langdetect could not classify text: {e}")
            return UNDETERMINED_RESULT
        if not candidates:
            return UNDETERMINED_RESULT

        best = candidates[0]
        confidence = round(max(0.0, min(1.0, best.prob)), 3)
        return DetectedLanguage(code=normalize_language_code(best.lang), confidence=confidence)

    def detect_many(self, texts: Iterable[Optional[str]]) -> List[DetectedLanguage]:
        """Detect languages for several texts, preserving order."""
        return [self.detect(text) for text in texts]

    @staticmethod
    def _looks_structural(sample: str) -> bool:
        visible = [c for c in sample if not c.isspace()]
        if not visible:
            return True
        symbol_count = sum(1 for c in visible if c in _STRUCTURAL_CHARS)
        if symbol_count / len(visible) > _STRUCTURAL_DENSITY_LIMIT:
            return True

        words = [w.casefold() for w in _WORD_PATTERN.findall(sample)]
        if not words:
            return True
        keyword_hits = sum(1 for w in words if w in _CODE_KEYWORDS)
        return (
            keyword_hits >= _CODE_KEYWORD_MIN_HITS
            and keyword_hits / len(words) >= _CODE_KEYWORD_SHARE_LIMIT
        )


_default_detector = LanguageDetector()


def detect_language(text: Optional[str]) -> DetectedLanguage:
    """Detect a language with the default 20-character threshold."""
    return _default_detector.detect(text)


def detect_languages(texts: Iterable[Optional[str]]) -> List[DetectedLanguage]:
    """Batch form of detect_language."""
    return _default_detector.detect_many(texts)
