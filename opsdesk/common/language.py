"""
Language Detection Service

Per-message language detection using langdetect plus a marker fallback.
Answers are produced in English or Spanish only, so every detection is
narrowed to one of SUPPORTED_LANGUAGES.
"""

import re
from dataclasses import dataclass

from langdetect import DetectorFactory, LangDetectException, detect_langs

# Seed langdetect for deterministic results
DetectorFactory.seed = 0

SUPPORTED_LANGUAGES = ("en", "es")
DEFAULT_LANGUAGE = "en"

# Characters that only show up in Spanish text
_SPANISH_CHARS_RE = re.compile(r"[ñÑ¿¡]")

_SPANISH_MARKERS = {
    "qué", "que", "cómo", "como", "cuál", "cual", "dónde", "donde", "por",
    "para", "necesito", "tiene", "tengo", "puedo", "el", "la", "los", "las",
    "una", "del", "acceso", "contraseña", "solicitar", "ayuda", "hola",
    "transacción", "transacciones", "rol", "posición", "puesto",
}

_WORD_RE = re.compile(r"[a-záéíóúüñ]+")


@dataclass(frozen=True)
class LanguageInfo:
    """Detected language information"""
    code: str           # "en" or "es"
    confidence: float   # 0.0~1.0
    method: str         # "langdetect", "markers", "default"

    @property
    def is_spanish(self) -> bool:
        return self.code == "es"


def _marker_score(text: str) -> int:
    lowered = text.lower()
    words = _WORD_RE.findall(lowered)
    score = sum(1 for w in words if w in _SPANISH_MARKERS)
    if _SPANISH_CHARS_RE.search(text):
        score += 2
    return score


def detect_language(text: str) -> LanguageInfo:
    """Detect language of input text.

    Uses langdetect with a Spanish marker-word fallback. Short texts
    (<10 chars) and anything that is not Spanish resolve to English.

    Args:
        text: Input text to detect language for

    Returns:
        LanguageInfo with a supported language code
    """
    if not text or not text.strip():
        return LanguageInfo(code=DEFAULT_LANGUAGE, confidence=1.0, method="default")

    cleaned = text.strip()
    markers = _marker_score(cleaned)

    if len(cleaned) < 10:
        if markers >= 2:
            return LanguageInfo(code="es", confidence=0.6, method="markers")
        return LanguageInfo(code=DEFAULT_LANGUAGE, confidence=0.5, method="default")

    try:
        results = detect_langs(cleaned)
    except LangDetectException:
        results = []

    if results:
        top = results[0]
        if top.lang == "es":
            return LanguageInfo(code="es", confidence=round(top.prob, 4), method="langdetect")
        # langdetect confuses short Spanish with pt/it/ca; markers decide
        if top.lang in ("pt", "it", "ca", "gl") and markers >= 1:
            return LanguageInfo(code="es", confidence=0.6, method="markers")
        if top.lang == "en":
            return LanguageInfo(code="en", confidence=round(top.prob, 4), method="langdetect")

    if markers >= 2:
        return LanguageInfo(code="es", confidence=0.6, method="markers")

    return LanguageInfo(code=DEFAULT_LANGUAGE, confidence=0.5, method="default")
