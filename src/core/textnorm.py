"""Text normalization shared by the template loader and the router."""

from __future__ import annotations

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")

_SYMBOLS = {
    "×": "*",
    "·": "*",
    "÷": ":",
    "—": "-",
    "–": "-",
    "−": "-",
}

_REGEX_MARKERS = (".*", ".+", "\\d", "\\w", "[", "(", "?", "+", "|")

TASK_TYPE_ALIASES = {
    "expressions": "arithmetic_fluency",
    "calculation": "arithmetic_fluency",
    "compute": "arithmetic_fluency",
    "algebra": "patterns_logic",
    "equation": "patterns_logic",
    "equations": "patterns_logic",
}

_CYRILLIC_WORD_START = r"(?:^|[^а-яёa-z0-9])"
_CYRILLIC_WORD_END = r"(?:[^а-яёa-z0-9]|$)"


def _strip_diacritics(text: str) -> str:
    # "й" decomposes to "и" + breve; it is a letter in its own right, keep it.
    kept = []
    for char in unicodedata.normalize("NFD", text):
        if unicodedata.combining(char):
            if char == "\u0306" and kept and kept[-1] == "и":
                kept.append(char)
            continue
        kept.append(char)
    return unicodedata.normalize("NFC", "".join(kept))


def normalize_text(text: str) -> str:
    """Fold case, diacritics, "ё", math symbols and whitespace."""

    result = text.lower().replace("ё", "е")
    result = _strip_diacritics(result)
    for symbol, replacement in _SYMBOLS.items():
        result = result.replace(symbol, replacement)
    return _WHITESPACE.sub(" ", result).strip()


def is_regex_pattern(pattern: str) -> bool:
    return any(marker in pattern for marker in _REGEX_MARKERS)


def normalize_task_type(value: str) -> str:
    """Lower-case a task type and map free-form engine labels to catalog ones."""

    task_type = value.strip().lower().strip(".:;,")
    return TASK_TYPE_ALIASES.get(task_type, task_type)


def cyrillic_word_regex(word: str) -> re.Pattern:
    """Word-boundary regex that treats Cyrillic letters as word characters."""

    return re.compile(_CYRILLIC_WORD_START + re.escape(word) + _CYRILLIC_WORD_END)
