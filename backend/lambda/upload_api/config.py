"""config.py — Upload API configuration: environment variables, table names, engine settings.

The composition scheme, date grammar, extension whitelist and tenant-case
prefixes are deployment-level choices; a deployment picks one set and keeps
it so the downstream indexer can parse every stored key.
"""
from __future__ import annotations

import os
from typing import Tuple

from filename_rules import (
    DATE_PATTERNS,
    DEFAULT_ALLOWED_EXTENSIONS,
    DEFAULT_TENANT_CASE_PREFIXES,
    SCHEME_TAG_CODEC,
    EngineConfig,
)

__all__ = [
    "ASSETS_TABLE",
    "DYNAMODB_REGION",
    "FUNDS_TABLE",
    "IDENTIFIER_CACHE_TTL",
    "SPVS_TABLE",
    "TYPE_RULES_TABLE",
    "TYPE_RULE_CACHE_TTL",
    "load_engine_config",
]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name, "")
    parts = tuple(p.strip() for p in raw.split(",") if p.strip())
    return parts or default


# ---------------------------------------------------------------------------
# Index tables
# ---------------------------------------------------------------------------

DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "eu-west-1")
TYPE_RULES_TABLE = os.environ.get("TYPE_RULES_TABLE", "type_paths")
ASSETS_TABLE = os.environ.get("ASSETS_TABLE", "tenant_asset_bridge")
SPVS_TABLE = os.environ.get("SPVS_TABLE", "spv")
FUNDS_TABLE = os.environ.get("FUNDS_TABLE", "fund")

TYPE_RULE_CACHE_TTL = float(os.environ.get("TYPE_RULE_CACHE_TTL", "300"))
IDENTIFIER_CACHE_TTL = float(os.environ.get("IDENTIFIER_CACHE_TTL", "300"))

# ---------------------------------------------------------------------------
# Filename rule engine
# ---------------------------------------------------------------------------


def load_engine_config() -> EngineConfig:
    """Build the EngineConfig from the environment (raises ValueError on bad values)."""
    extensions = {e.lower().lstrip(".") for e in _env_csv("ALLOWED_EXTENSIONS", DEFAULT_ALLOWED_EXTENSIONS)}
    if _env_bool("ALLOW_TXT_UPLOADS", False):
        extensions.add("txt")
    return EngineConfig(
        composition_scheme=os.environ.get("COMPOSITION_SCHEME", SCHEME_TAG_CODEC).strip().lower(),
        date_grammar=frozenset(_env_csv("DATE_GRAMMAR", tuple(DATE_PATTERNS))),
        allowed_extensions=frozenset(extensions),
        tenant_case_prefixes=_env_csv("TENANT_CASE_PREFIXES", DEFAULT_TENANT_CASE_PREFIXES),
        validate_identifier_exists=_env_bool("VALIDATE_IDENTIFIER_EXISTS", True),
        intake_bucket=os.environ.get("INTAKE_BUCKET", "inbox"),
        misc_bucket=os.environ.get("MISC_BUCKET", "other"),
        upload_url_ttl_seconds=int(os.environ.get("UPLOAD_URL_TTL_SECONDS", "7200")),
        person_tag=_env_bool("PERSON_TAG_ENABLED", True),
    )
