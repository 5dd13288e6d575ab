"""docintake_shared.sanitize — Make user text safe as a filename / tag-value component.

German umlauts are transliterated to ASCII digraphs *before* generic
diacritic stripping, otherwise NFKD would reduce ``ü`` to a bare ``u``.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional

GERMAN_TRANSLITERATION = {
    "ä": "ae",
    "ö": "oe",
    "ü": "ue",
    "Ä": "Ae",
    "Ö": "Oe",
    "Ü": "Ue",
    "ß": "ss",
}

_GERMAN_RE = re.compile("[" + "".join(GERMAN_TRANSLITERATION) + "]")
_UNSAFE_RE = re.compile(r'[\\/:*?"<>|]')
_TAG_DELIMITER_RE = re.compile(r"[()=]")
_WS_RE = re.compile(r"\s+")
_DASHES_RE = re.compile(r"-+")
_NON_DIGIT_RE = re.compile(r"\D")

UNNAMED = "unnamed"


def transliterate_german(text: str) -> str:
    return _GERMAN_RE.sub(lambda m: GERMAN_TRANSLITERATION[m.group(0)], text)


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def to_ascii_readable(text: str) -> str:
    return strip_diacritics(transliterate_german(text))


def _cleanup(text: str, *, keep_spaces: bool) -> str:
    text = _UNSAFE_RE.sub("-", text)
    text = _WS_RE.sub(" " if keep_spaces else "", text)
    text = _DASHES_RE.sub("-", text)
    return text.strip()


def sanitize_filename(name: str) -> str:
    """Transliterate, strip diacritics and replace path-unsafe characters.

    ``"Mietvertrag für Müller.pdf"`` -> ``"Mietvertrag fuer Mueller.pdf"``.
    Idempotent; falls back to ``unnamed`` when nothing survives.
    """
    cleaned = _cleanup(to_ascii_readable(str(name or "")), keep_spaces=True)
    return cleaned or UNNAMED


def sanitize_tag_value(value: str) -> str:
    """Like :func:`sanitize_filename` but also neutralizes ``( ) =``.

    Returns an empty string (not ``unnamed``) when nothing survives.
    """
    text = _TAG_DELIMITER_RE.sub("-", to_ascii_readable(str(value or "")))
    return _cleanup(text, keep_spaces=True)


def sanitize_segment(value: Optional[str], *, keep_spaces: bool = True) -> Optional[str]:
    """Filename segment for the underscore-joined scheme; ``None`` when empty.

    ``keep_spaces`` collapses whitespace runs to one space, otherwise
    whitespace is removed entirely.
    """
    if not value:
        return None
    cleaned = _cleanup(to_ascii_readable(value), keep_spaces=keep_spaces)
    return cleaned or None


def normalize_asset(raw: Optional[str]) -> Optional[str]:
    """Asset codes are case-insensitive symbols: trim, drop whitespace, uppercase."""
    if not raw:
        return None
    s = _WS_RE.sub("", raw.strip())
    return s.upper() if s else None


def digits_only(raw: Optional[str]) -> str:
    return _NON_DIGIT_RE.sub("", str(raw or ""))


def uniq_case_insensitive(values: Iterable[Optional[str]]) -> List[str]:
    """De-duplicate ignoring case (first casing wins) and sort case/accent-insensitively."""
    seen = set()
    out: List[str] = []
    for raw in values:
        v = (raw or "").strip()
        if not v:
            continue
        k = v.lower()
        if k in seen:
            continue
        seen.add(k)
        out.append(v)
    return sorted(out, key=lambda v: (strip_diacritics(v).casefold(), v))
