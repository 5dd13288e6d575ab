"""rule_index.py — Type-rule and identifier lookups against the intake index tables."""
from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Tuple

from docintake_shared.aws_clients import _get_ddb
from docintake_shared.serialization import _deserialize

from config import (
    ASSETS_TABLE,
    FUNDS_TABLE,
    IDENTIFIER_CACHE_TTL,
    SPVS_TABLE,
    TYPE_RULE_CACHE_TTL,
    TYPE_RULES_TABLE,
)
from filename_rules import TypeRule

logger = logging.getLogger(__name__)

# scope -> (table, partition key attribute)
_IDENTIFIER_TABLES: Dict[str, Tuple[str, str]] = {
    "asset": (ASSETS_TABLE, "asset"),
    "spv": (SPVS_TABLE, "spv"),
    "fund": (FUNDS_TABLE, "fund"),
}

_rule_cache: Dict[str, Optional[TypeRule]] = {}
_rule_cache_at: float = 0.0
_identifier_cache: Dict[Tuple[str, str], bool] = {}
_identifier_cache_at: float = 0.0


def _get_rule_item(code: str) -> Optional[Dict]:
    resp = _get_ddb().get_item(
        TableName=TYPE_RULES_TABLE,
        Key={"code": {"S": code}},
    )
    item = resp.get("Item")
    return _deserialize(item) if item else None


def get_type_rule(code: str) -> Optional[TypeRule]:
    """Fetch the rule for ``code`` (exact, then lower-cased); ``None`` if absent.

    Lookup errors propagate: a request must never be validated without its
    rule flags.
    """
    global _rule_cache, _rule_cache_at
    now = time.time()
    if (now - _rule_cache_at) >= TYPE_RULE_CACHE_TTL:
        _rule_cache = {}
        _rule_cache_at = now

    key = code.strip().lower()
    if key in _rule_cache:
        return _rule_cache[key]

    item = _get_rule_item(code.strip())
    if item is None and key != code.strip():
        item = _get_rule_item(key)
    rule = TypeRule.from_item(item) if item else None
    _rule_cache[key] = rule
    return rule


def identifier_exists(scope: str, identifier: str) -> bool:
    """True if ``identifier`` is registered for ``scope``.

    Fail-open: a lookup error is logged and treated as a match so an index
    outage does not block intake.
    """
    global _identifier_cache, _identifier_cache_at
    now = time.time()
    if (now - _identifier_cache_at) >= IDENTIFIER_CACHE_TTL:
        _identifier_cache = {}
        _identifier_cache_at = now

    # The index matches exactly, so the cache must not fold case.
    cache_key = (scope, identifier)
    if cache_key in _identifier_cache:
        return _identifier_cache[cache_key]

    table, attr = _IDENTIFIER_TABLES[scope]
    try:
        resp = _get_ddb().query(
            TableName=table,
            KeyConditionExpression="#k = :v",
            ExpressionAttributeNames={"#k": attr},
            ExpressionAttributeValues={":v": {"S": identifier}},
            ProjectionExpression="#k",
            Limit=1,
        )
    except Exception as exc:
        logger.warning("%s validation failed (fail-open): %s", scope, exc)
        return True
    exists = bool(resp.get("Items"))
    _identifier_cache[cache_key] = exists
    return exists


def reset_caches() -> None:
    global _rule_cache, _rule_cache_at, _identifier_cache, _identifier_cache_at
    _rule_cache = {}
    _rule_cache_at = 0.0
    _identifier_cache = {}
    _identifier_cache_at = 0.0
