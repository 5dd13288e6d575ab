"""docintake_shared.tag_codec — Metadata-tagged filename codec.

Encodes an ordered tag set into a single filesystem- and URL-safe token::

    {"ttype": "1.2", "tdate": "2024-03"}  ->  m(ttype=1.2)(tdate=2024-03)

Values are percent-encoded with the strict RFC 3986 profile (only
``A-Z a-z 0-9 - _ . ~`` stay literal), so ``( ) = ! ' *`` never appear
unescaped inside a value. The token is the object-storage key and the only
carrier of the metadata until the document is indexed, so
``decode(encode(tags)) == tags`` must hold for every tag set whose keys match
``[a-z0-9_-]+``.
"""

from __future__ import annotations

import re
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import quote, unquote

META_PREFIX = "m"

_KEY_RE = re.compile(r"^[a-z0-9_-]+$")
_KEY_STRIP_RE = re.compile(r"[^a-z0-9_-]")
# A '%' not followed by two hex digits cannot be percent-decoded.
_BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def normalize_key(raw: str) -> str:
    """Lowercase and drop every character outside ``[a-z0-9_-]``."""
    return _KEY_STRIP_RE.sub("", str(raw or "").strip().lower())


def _enc(value: str) -> str:
    # surrogatepass keeps encode total for lone surrogates (legal in JSON input).
    return quote(value.encode("utf-8", "surrogatepass"), safe="")


def _dec(value: str) -> str:
    # Non-conformant encodings fall back to the raw text instead of failing
    # the whole parse.
    if _BAD_ESCAPE_RE.search(value):
        return value
    try:
        return unquote(value, errors="surrogatepass")
    except UnicodeDecodeError:
        return value


def encode(tags: Mapping[str, object]) -> str:
    """Serialize ``tags`` (in iteration order) to ``m(k=v)(k=v)...``.

    Keys that are empty after normalization are skipped. Never fails; an empty
    mapping yields ``"m"``.
    """
    blocks = []
    for raw_key, raw_value in tags.items():
        key = normalize_key(raw_key)
        if not key:
            continue
        value = "" if raw_value is None else str(raw_value)
        blocks.append(f"({key}={_enc(value)})")
    return META_PREFIX + "".join(blocks)


def decode(token: str) -> Optional[Dict[str, str]]:
    """Parse a token produced by :func:`encode`.

    Returns ``None`` for anything malformed: empty input, missing prefix,
    unterminated or unparenthesized block, block without ``key=``, or a key
    outside ``[a-z0-9_-]+``.
    """
    if not token or token[0] != META_PREFIX:
        return None

    out: Dict[str, str] = {}
    i = 1
    while i < len(token):
        if token[i] != "(":
            return None
        close = token.find(")", i + 1)
        if close == -1:
            return None
        inner = token[i + 1:close]
        eq = inner.find("=")
        if eq <= 0:
            return None
        key = inner[:eq].strip().lower()
        if not _KEY_RE.match(key):
            return None
        out[key] = _dec(inner[eq + 1:])
        i = close + 1
    return out


def split_name(name: str) -> Tuple[str, str]:
    """Split on the last ``.``; returns ``(base, ext)`` with ``ext`` possibly empty."""
    dot = name.rfind(".")
    if dot < 0:
        return name, ""
    return name[:dot], name[dot + 1:]


def build_filename(tags: Mapping[str, object], original_name: str) -> str:
    """Encode ``tags`` and re-attach the extension of ``original_name``.

    No extension is invented here; the caller guarantees one upstream.
    """
    _base, ext = split_name(original_name or "")
    token = encode(tags)
    return f"{token}.{ext}" if ext else token


def decode_filename(name: str) -> Optional[Dict[str, str]]:
    """Decode a stored object name (``m(...).ext``), ignoring its extension."""
    name = name or ""
    # Values may hold literal dots; a bare token always ends with its block.
    if name.endswith(")"):
        return decode(name)
    base, _ext = split_name(name)
    return decode(base)
