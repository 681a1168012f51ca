"""Normalization of the attributes the contact matcher correlates on."""

import re
from typing import Optional

# Russian/Belarusian Cyrillic to Latin, close to the passport transliteration
# that card issuers print on cards.
_CYRILLIC_TO_LATIN = {
    "а": "a", "б": "b", "в": "v", "г": "g", "д": "d", "е": "e", "ё": "e",
    "ж": "zh", "з": "z", "и": "i", "й": "y", "к": "k", "л": "l", "м": "m",
    "н": "n", "о": "o", "п": "p", "р": "r", "с": "s", "т": "t", "у": "u",
    "ф": "f", "х": "kh", "ц": "ts", "ч": "ch", "ш": "sh", "щ": "shch",
    "ъ": "", "ы": "y", "ь": "", "э": "e", "ю": "yu", "я": "ya",
    "і": "i", "ў": "u",
}

_NON_WORD = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def transliterate(text: str) -> str:
    """Transliterate Cyrillic letters in ``text`` to Latin; other characters pass through."""
    return "".join(_CYRILLIC_TO_LATIN.get(ch, ch) for ch in text.lower())


def normalize_email(value: Optional[str]) -> Optional[str]:
    """Trim and lower-case an email; values without an ``@`` are not emails."""
    if not value:
        return None
    email = value.strip().lower()
    if "@" not in email:
        return None
    return email


def normalize_name(value: Optional[str]) -> Optional[str]:
    """Build the comparison key for a person's name.

    Lower-cases, transliterates, strips punctuation and sorts the tokens, so
    ``"IVAN PETROV"``, ``"Petrov, Ivan"`` and ``"Петров Иван"`` share one key.
    Single-word names are too ambiguous to correlate on and yield ``None``.
    """
    if not value:
        return None
    text = _NON_WORD.sub(" ", transliterate(value))
    tokens = [t for t in _SPACES.split(text) if t]
    if len(tokens) < 2:
        return None
    return " ".join(sorted(tokens))
