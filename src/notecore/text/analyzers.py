"""Text analyzers and the per-language analyzer registry.

An analyzer turns raw text into an ordered list of tokens, each carrying
its word position and the field weight class it was produced for. The
registry resolves a language code to its analyzer and falls back to the
simple analyzer for anything it does not know, so every note stays
searchable.
"""
import re
import threading
import unicodedata
from typing import Dict, List, NamedTuple, Optional, Protocol, runtime_checkable

from notecore.models.schema import WeightClass
from notecore.text.profiles import LANGUAGE_PROFILES, LanguageProfile

SIMPLE_ANALYZER_NAME = "simple"

# Words are maximal runs of letters and digits; everything else separates
_TOKEN_PATTERN = re.compile(r"[^\W_]+", re.UNICODE)

# Han, kana and CJK compatibility ideographs: scripts written without spaces
_CJK_RUN_PATTERN = re.compile(
    r"[\u3040-\u30ff\u31f0-\u31ff\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]+"
)

# Tokens longer than this are truncated to fit the index column
MAX_TOKEN_LENGTH = 64


class Token(NamedTuple):
    """A normalized token at its word position in the source text."""

    text: str
    position: int
    weight_class: WeightClass


@runtime_checkable
class Analyzer(Protocol):
    """Pure text -> tokens pipeline."""

    name: str

    def analyze(
        self, text: str, weight_class: WeightClass = WeightClass.BODY
    ) -> List[Token]:
        ...


def cjk_bigrams(run: str) -> List[str]:
    """Overlapping character pairs of a CJK run; a lone character stays whole."""
    if len(run) == 1:
        return [run]
    return [run[i:i + 2] for i in range(len(run) - 1)]


def _split_cjk(word: str) -> List[str]:
    parts: List[str] = []
    start = 0
    for match in _CJK_RUN_PATTERN.finditer(word):
        if match.start() > start:
            parts.append(word[start:match.start()])
        parts.extend(cjk_bigrams(match.group(0)))
        start = match.end()
    if start < len(word):
        parts.append(word[start:])
    return parts


def split_words(text: str) -> List[str]:
    """NFKC-normalize and casefold text, then split it into words.

    Words break on punctuation and whitespace. Runs of Han or kana
    characters, which carry no spaces, become overlapping bigrams so a
    word inside a longer clause can still be matched.
    """
    normalized = unicodedata.normalize("NFKC", text).casefold()
    words: List[str] = []
    for match in _TOKEN_PATTERN.finditer(normalized):
        word = match.group(0)
        parts = _split_cjk(word) if _CJK_RUN_PATTERN.search(word) else [word]
        words.extend(part[:MAX_TOKEN_LENGTH] for part in parts)
    return words


def fold_diacritics(word: str) -> str:
    """Strip combining marks, e.g. "café" -> "cafe", "straße" -> "strasse"."""
    decomposed = unicodedata.normalize("NFKD", word.replace("ß", "ss"))
    return "".join(c for c in decomposed if not unicodedata.combining(c))


class SimpleAnalyzer:
    """Universal analyzer: normalize, case-fold and split; no stemming or stopwords."""

    name = SIMPLE_ANALYZER_NAME

    def analyze(
        self, text: str, weight_class: WeightClass = WeightClass.BODY
    ) -> List[Token]:
        return [
            Token(word, position, weight_class)
            for position, word in enumerate(split_words(text or ""))
        ]

    def __repr__(self) -> str:
        return "SimpleAnalyzer()"


class LightStemmer:
    """Suffix-stripping stemmer driven by a language profile.

    Removes the longest matching suffix that leaves at least
    ``min_stem_length`` characters. Applied once per word.
    """

    def __init__(self, suffixes, min_stem_length: int = 3) -> None:
        self.suffixes = tuple(sorted(suffixes, key=len, reverse=True))
        self.min_stem_length = min_stem_length

    def stem(self, word: str) -> str:
        for suffix in self.suffixes:
            if word.endswith(suffix) and len(word) - len(suffix) >= self.min_stem_length:
                return word[: -len(suffix)]
        return word


class LanguageAnalyzer:
    """Language-specific analyzer.

    Pipeline: case-fold, split, stopword removal, diacritic folding,
    light stemming. Stopwords are matched before folding so accented
    stopwords ("für", "à") are recognised; positions of removed
    stopwords are skipped, not renumbered.
    """

    def __init__(self, profile: LanguageProfile) -> None:
        self.profile = profile
        self.name = profile.code
        self._stopwords = frozenset(
            profile.stopwords | {fold_diacritics(w) for w in profile.stopwords}
        )
        self._stemmer = LightStemmer(
            (fold_diacritics(s) for s in profile.suffixes), profile.min_stem_length
        )

    def analyze(
        self, text: str, weight_class: WeightClass = WeightClass.BODY
    ) -> List[Token]:
        tokens = []
        for position, word in enumerate(split_words(text or "")):
            if word in self._stopwords:
                continue
            folded = fold_diacritics(word)
            if folded in self._stopwords:
                continue
            tokens.append(Token(self._stemmer.stem(folded), position, weight_class))
        return tokens

    def __repr__(self) -> str:
        return f"LanguageAnalyzer({self.profile.code!r})"


class AnalyzerRegistry:
    """Maps language codes to analyzers with a guaranteed default.

    Unknown codes, ``None`` and the undetermined code all resolve to the
    simple analyzer.
    """

    def __init__(self, default: Optional[Analyzer] = None) -> None:
        self._default: Analyzer = default or SimpleAnalyzer()
        self._analyzers: Dict[str, Analyzer] = {self._default.name: self._default}
        self._lock = threading.Lock()

    @property
    def default(self) -> Analyzer:
        return self._default

    def register(self, analyzer: Analyzer, code: Optional[str] = None) -> None:
        """Register ``analyzer`` for ``code`` (defaults to its name)."""
        key = (code or analyzer.name).lower()
        with self._lock:
            self._analyzers[key] = analyzer

    def get(self, code: Optional[str]) -> Analyzer:
        if not code:
            return self._default
        return self._analyzers.get(code.lower(), self._default)

    def supports(self, code: Optional[str]) -> bool:
        return bool(code) and code.lower() in self._analyzers

    @property
    def codes(self) -> List[str]:
        return sorted(self._analyzers)


def build_default_registry() -> AnalyzerRegistry:
    """Registry with the simple analyzer plus one analyzer per profile."""
    registry = AnalyzerRegistry()
    for profile in LANGUAGE_PROFILES.values():
        registry.register(LanguageAnalyzer(profile))
    return registry


default_registry = build_default_registry()
