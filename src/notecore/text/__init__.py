"""Language detection and text analysis."""

from notecore.text.analyzers import (
    Analyzer,
    AnalyzerRegistry,
    LanguageAnalyzer,
    SimpleAnalyzer,
    default_registry,
)
from notecore.text.language import UNDETERMINED, LanguageDetector, detect_language

__all__ = [
    "Analyzer",
    "AnalyzerRegistry",
    "LanguageAnalyzer",
    "SimpleAnalyzer",
    "default_registry",
    "UNDETERMINED",
    "LanguageDetector",
    "detect_language",
]
