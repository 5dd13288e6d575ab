"""filename_rules.py — Upload filename rule engine.

Turns an upload request (document type, scope identifier, date, tenant,
original filename) into a validated canonical object name, routes it to a
storage bucket and mints a short-lived presigned PUT URL for it.

A request moves through four stages, each one strictly narrowing the data::

    received -> validated -> composed -> routed

Any rejection is an ``IntakeError`` subclass (see docintake_shared.errors);
nothing is written to storage before the request reaches ``routed``, and the
engine itself never writes anything: the client uploads with the URL.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from docintake_shared import tag_codec
from docintake_shared.aws_clients import _get_s3, _store_error_message
from docintake_shared.errors import (
    ComposeFailure,
    DelegateFailure,
    IntakeError,
    InvalidFormat,
    MissingField,
    UnknownIdentifier,
    UnknownType,
)
from docintake_shared.sanitize import (
    digits_only,
    normalize_asset,
    sanitize_filename,
    sanitize_segment,
    sanitize_tag_value,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SCHEME_TAG_CODEC = "tag_codec"
SCHEME_CONCAT = "concat"
COMPOSITION_SCHEMES = (SCHEME_TAG_CODEC, SCHEME_CONCAT)

DATE_PATTERNS = {
    "YYYY": re.compile(r"^\d{4}$"),
    "YYYY-MM": re.compile(r"^\d{4}-\d{2}$"),
    "YYYY-MM-DD": re.compile(r"^\d{4}-\d{2}-\d{2}$"),
}
_DATE_FORMATS = {"YYYY": "%Y", "YYYY-MM": "%Y-%m", "YYYY-MM-DD": "%Y-%m-%d"}

DEFAULT_ALLOWED_EXTENSIONS = ("pdf", "png", "jpg", "jpeg", "docx", "xlsx")
DEFAULT_EXTENSION = "pdf"
DEFAULT_TENANT_CASE_PREFIXES = ("1.7", "1.9.5.1")

OTHER_TYPE = "other"
SCOPES = ("asset", "spv", "fund")
DEFAULT_SCOPE = "asset"

STAGE_RECEIVED = "received"
STAGE_VALIDATED = "validated"
STAGE_COMPOSED = "composed"
STAGE_ROUTED = "routed"

TYPE_SELECTED = "selected"
TYPE_EXTRACTED = "extracted"

# No "_": it separates the segments of concat names.
_TYPE_CODE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*$")
_NUMERIC_SEGMENT_RE = re.compile(r"^[0-9]+$")
# Leading dotted code of a file that already carries its number, e.g. "1.7.3_Mietvertrag.pdf".
_LEADING_CODE_RE = re.compile(r"^\s*(\d+(?:\.\d+)+)(?=$|[\s_.\-])")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    composition_scheme: str = SCHEME_TAG_CODEC
    date_grammar: FrozenSet[str] = frozenset(DATE_PATTERNS)
    allowed_extensions: FrozenSet[str] = frozenset(DEFAULT_ALLOWED_EXTENSIONS)
    tenant_case_prefixes: Tuple[str, ...] = DEFAULT_TENANT_CASE_PREFIXES
    validate_identifier_exists: bool = True
    intake_bucket: str = "inbox"
    misc_bucket: str = "other"
    upload_url_ttl_seconds: int = 7200
    person_tag: bool = True

    def __post_init__(self) -> None:
        if self.composition_scheme not in COMPOSITION_SCHEMES:
            raise ValueError(f"Unsupported composition scheme: {self.composition_scheme!r}")
        unknown = set(self.date_grammar) - set(DATE_PATTERNS)
        if unknown or not self.date_grammar:
            raise ValueError(f"Unsupported date grammar: {sorted(unknown) or 'empty'}")
        if self.upload_url_ttl_seconds <= 0:
            raise ValueError("upload_url_ttl_seconds must be positive")
        if not self.intake_bucket or not self.misc_bucket:
            raise ValueError("intake_bucket and misc_bucket must be set")


@dataclass(frozen=True)
class TypeRule:
    """Per-type validation flags as stored in the type index."""

    type: str
    display_name: str = ""
    scope: str = ""
    requires_asset: bool = False
    requires_tenant: bool = False
    require_strict: bool = False
    allow_keyword: bool = False
    aliases: Tuple[str, ...] = ()

    @property
    def requires_identifier(self) -> bool:
        return self.requires_asset or self.requires_tenant

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "TypeRule":
        """Build from a deserialized index row (``type_paths`` columns)."""
        aliases = item.get("aliases") or ()
        if isinstance(aliases, str):
            aliases = aliases.split(",")
        return cls(
            type=str(item.get("code") or item.get("type") or "").strip(),
            display_name=str(item.get("display_name") or "").strip(),
            scope=str(item.get("type_f") or "").strip().lower(),
            requires_asset=bool(item.get("requires_asset", False)),
            requires_tenant=bool(item.get("requires_tenant", False)),
            require_strict=bool(item.get("require_strict", False)),
            allow_keyword=bool(item.get("allow_keyword", False)),
            aliases=tuple(sorted(str(a).strip() for a in aliases if str(a).strip())),
        )


OTHER_RULE = TypeRule(type=OTHER_TYPE, display_name=OTHER_TYPE)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


@dataclass
class UploadRequest:
    type: str = ""
    type_name: str = ""
    scope: str = DEFAULT_SCOPE
    identifier: str = ""
    date: str = ""
    tenant: str = ""
    suffix: str = ""
    original_filename: str = ""
    ext: str = ""
    uploader: str = ""
    right_number_already: bool = False
    confirmed_type: str = ""

    @classmethod
    def from_payload(cls, body: Dict[str, Any], *, uploader: str = "") -> "UploadRequest":
        """Coerce a JSON request body; no validation happens here."""
        scope = _text(body.get("scope") or body.get("type_f") or DEFAULT_SCOPE).lower()
        identifier = body.get(scope) if scope in SCOPES else None
        return cls(
            type=_text(body.get("type")),
            type_name=_text(body.get("type_name") or body.get("typeName")),
            scope=scope,
            identifier=_text(identifier if identifier is not None else body.get("identifier")),
            date=_text(body.get("date")),
            tenant=_text(body.get("tenant") or body.get("tenant_no")),
            suffix=_text(body.get("suffix")),
            original_filename=_text(body.get("originalFilename") or body.get("original_filename")),
            ext=_text(body.get("ext")),
            uploader=_text(uploader),
            right_number_already=(
                body.get("right_number_already") is True or body.get("rightNumberAlready") is True
            ),
            confirmed_type=_text(body.get("confirmed_type") or body.get("confirmedType")),
        )


@dataclass(frozen=True)
class TypeSource:
    """Where the type code came from: picked by the user or read off the filename."""

    code: str
    kind: str = TYPE_SELECTED

    @property
    def extracted(self) -> bool:
        return self.kind == TYPE_EXTRACTED


@dataclass(frozen=True)
class ValidatedUpload:
    type_code: str
    base_type: str
    type_source: TypeSource
    type_name: str
    scope: str
    identifier: Optional[str]
    date: Optional[str]
    tenant: Optional[str]
    suffix: Optional[str]
    ext: str
    original_filename: str
    uploader: str
    rule: TypeRule

    @property
    def is_other(self) -> bool:
        return is_other_type(self.type_code)


@dataclass(frozen=True)
class CanonicalName:
    name: str
    base_name: str
    person_tag: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadTarget:
    bucket: str
    path: str
    signed_url: str
    expires_in: int


@dataclass(frozen=True)
class PreparedUpload:
    """A request that reached the ``routed`` stage."""

    upload: ValidatedUpload
    name: CanonicalName
    bucket: str
    stage: str = STAGE_ROUTED


# ---------------------------------------------------------------------------
# Type resolution
# ---------------------------------------------------------------------------


def is_other_type(code: Optional[str]) -> bool:
    return _text(code).lower() == OTHER_TYPE


def extract_type_from_filename(filename: str) -> Optional[str]:
    """Best-effort type code from a file that is already numbered.

    A tagged name yields its ``ttype``; otherwise a leading dotted numeric
    code (``1.7.3_Mietvertrag.pdf``) is taken.
    """
    name = _text(filename)
    if not name:
        return None
    tags = tag_codec.decode_filename(name)
    if tags and tags.get("ttype"):
        return tags["ttype"].strip()
    match = _LEADING_CODE_RE.match(name)
    return match.group(1) if match else None


def resolve_type_source(request: UploadRequest) -> TypeSource:
    if request.right_number_already:
        code = extract_type_from_filename(request.original_filename)
        if not code:
            raise MissingField(
                "Could not read a document type from the filename; select a type.",
                field="type",
            )
        source = TypeSource(code, TYPE_EXTRACTED)
    else:
        if not request.type:
            raise MissingField("Field 'type' is required.", field="type")
        source = TypeSource(request.type, TYPE_SELECTED)

    if is_other_type(source.code):
        return TypeSource(OTHER_TYPE, source.kind)
    if not _TYPE_CODE_RE.match(source.code):
        raise InvalidFormat(f"Invalid document type '{source.code}'.", field="type")
    return source


def tenant_case_prefix(code: str, prefixes: Tuple[str, ...]) -> Optional[str]:
    """Longest configured prefix the code belongs to, matched on segment boundaries."""
    for prefix in sorted(prefixes, key=len, reverse=True):
        if code == prefix or code.startswith(prefix + "."):
            return prefix
    return None


def is_tenant_case(code: str, prefixes: Tuple[str, ...]) -> bool:
    return tenant_case_prefix(code, prefixes) is not None


def has_tenant_already(code: str, prefixes: Tuple[str, ...]) -> bool:
    """True if the segment right after the tenant-case prefix is all digits."""
    prefix = tenant_case_prefix(code, prefixes)
    if prefix is None:
        return False
    segs = code.split(".")
    n = len(prefix.split("."))
    return len(segs) > n and bool(_NUMERIC_SEGMENT_RE.match(segs[n]))


def add_tenant_to_type(code: str, tenant: str, prefixes: Tuple[str, ...]) -> str:
    """Append the tenant number as one numeric segment, at most once.

    A code that already carries a tenant keeps it; a supplied tenant number
    must then name the same tenant.
    """
    tenant_no = digits_only(tenant)
    if has_tenant_already(code, prefixes):
        prefix = tenant_case_prefix(code, prefixes) or ""
        folded = code.split(".")[len(prefix.split("."))]
        if tenant_no and int(tenant_no) != int(folded):
            raise InvalidFormat(
                f"Tenant {tenant_no} does not match tenant {folded} in type '{code}'.",
                field="tenant",
                type=code,
            )
        return code
    if not tenant_no:
        raise MissingField("A tenant number is required for this document type.", field="tenant")
    return f"{code}.{tenant_no}"


def base_type_code(code: str, prefixes: Tuple[str, ...]) -> str:
    """Strip a tenant segment already folded into a tenant-case code."""
    if not has_tenant_already(code, prefixes):
        return code
    prefix = tenant_case_prefix(code, prefixes) or ""
    segs = code.split(".")
    n = len(prefix.split("."))
    return ".".join(segs[:n] + segs[n + 1:])


def resolve_type_rule(
    code: str,
    lookup: Callable[[str], Optional[TypeRule]],
    config: EngineConfig,
) -> Optional[TypeRule]:
    """Rule for ``code``; ``None`` when no rule exists.

    ``other`` is a wildcard that needs no rule. A code that already carries a
    tenant segment falls back to the rule of its base code.
    """
    if is_other_type(code):
        return OTHER_RULE
    rule = lookup(code)
    if rule is None:
        base = base_type_code(code, config.tenant_case_prefixes)
        if base != code:
            rule = lookup(base)
    return rule


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------


def validate_date(value: str, config: EngineConfig) -> Optional[str]:
    """Return the trimmed date if it matches an enabled form, ``None`` if empty.

    Raises InvalidFormat for anything else, including impossible calendar
    dates such as ``2024-02-30``.
    """
    text = _text(value)
    if not text:
        return None
    for form in sorted(config.date_grammar, key=len, reverse=True):
        if DATE_PATTERNS[form].match(text):
            try:
                dt.datetime.strptime(text, _DATE_FORMATS[form])
            except ValueError:
                break
            return text
    allowed = ", ".join(sorted(config.date_grammar, key=len))
    raise InvalidFormat(f"Date '{text}' must match one of: {allowed}.", field="date")


def normalize_date(value: Optional[str]) -> Optional[str]:
    """Widen a validated partial date to a full ``YYYY-MM-DD``."""
    if not value:
        return None
    if DATE_PATTERNS["YYYY"].match(value):
        return f"{value}-01-01"
    if DATE_PATTERNS["YYYY-MM"].match(value):
        return f"{value}-01"
    return value


def normalize_identifier(scope: str, raw: str) -> Optional[str]:
    if scope == "asset":
        return normalize_asset(raw)
    return sanitize_tag_value(raw) or None


def resolve_extension(request: UploadRequest, config: EngineConfig) -> str:
    """Explicit ``ext`` wins, then the original filename's; default ``pdf``."""
    raw = request.ext
    if not raw:
        _base, raw = tag_codec.split_name(request.original_filename)
    raw = _text(raw).lstrip(".").lower()
    if not raw:
        return DEFAULT_EXTENSION
    if raw not in config.allowed_extensions:
        allowed = ", ".join(sorted(config.allowed_extensions))
        raise InvalidFormat(
            f"File extension '.{raw}' is not allowed (allowed: {allowed}).",
            field="ext",
            ext=raw,
        )
    return raw


_FREE_TEXT_FIELDS = (
    ("type_name", "type_name"),
    ("identifier", "identifier"),
    ("date", "date"),
    ("tenant", "tenant"),
    ("suffix", "suffix"),
    ("original_filename", "originalFilename"),
    ("ext", "ext"),
    ("uploader", "uploader"),
)


def _utf8_encodable(value: str) -> bool:
    # JSON admits lone surrogates; object keys and tag values must be UTF-8.
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def validate(
    request: UploadRequest,
    source: TypeSource,
    rule: TypeRule,
    config: EngineConfig,
    identifier_exists: Optional[Callable[[str, str], bool]] = None,
) -> ValidatedUpload:
    """Apply the per-type rules; first failing check wins.

    Order: filename, text encoding, scope, date, identifier (presence then
    existence), tenant, extension.
    """
    if not request.original_filename:
        raise MissingField("Field 'originalFilename' is required.", field="originalFilename")
    for attr, field_name in _FREE_TEXT_FIELDS:
        if not _utf8_encodable(getattr(request, attr)):
            raise InvalidFormat(f"Field '{field_name}' is not valid text.", field=field_name)

    other = is_other_type(source.code)

    scope = request.scope or DEFAULT_SCOPE
    if scope not in SCOPES:
        raise InvalidFormat(f"Scope must be one of: {', '.join(SCOPES)}.", field="scope")

    try:
        date = validate_date(request.date, config)
    except InvalidFormat:
        if not other:
            raise
        logger.info("dropping invalid date %r on unclassified upload", request.date)
        date = None
    if date is None and rule.require_strict and not other:
        raise MissingField("A document date is required for this document type.", field="date")

    identifier = normalize_identifier(scope, request.identifier)
    if identifier is None and rule.requires_identifier and not other:
        raise MissingField(f"Field '{scope}' is required for this document type.", field=scope)
    if identifier and config.validate_identifier_exists and identifier_exists is not None:
        if not identifier_exists(scope, identifier):
            raise UnknownIdentifier(
                f"Unknown {scope} '{identifier}'.",
                field=scope,
                identifier=identifier,
            )

    type_code = source.code
    tenant: Optional[str] = None
    if not other and is_tenant_case(type_code, config.tenant_case_prefixes):
        type_code = add_tenant_to_type(type_code, request.tenant, config.tenant_case_prefixes)
    elif request.tenant:
        tenant = sanitize_segment(request.tenant)

    ext = resolve_extension(request, config)

    return ValidatedUpload(
        type_code=type_code,
        base_type=rule.type or source.code,
        type_source=source,
        type_name=sanitize_tag_value(request.type_name) or sanitize_tag_value(rule.display_name) or type_code,
        scope=scope,
        identifier=identifier,
        date=date,
        tenant=tenant,
        suffix=sanitize_segment(request.suffix),
        ext=ext,
        original_filename=request.original_filename,
        uploader=request.uploader,
        rule=rule,
    )


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def person_tag(identity: str) -> str:
    """Six-character uploader tag: 32-bit FNV-1a over UTF-16 code units, base36."""
    h = _FNV_OFFSET
    data = identity.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return _base36(h)[:6]


def _compose_tagged(upload: ValidatedUpload) -> CanonicalName:
    tags: Dict[str, str] = {
        "ttype": upload.type_code,
        "tname": upload.type_name,
        "tscope": upload.scope,
    }
    if upload.identifier:
        tags[f"t{upload.scope}"] = upload.identifier
    if upload.date:
        tags["tdate"] = upload.date
    if upload.uploader:
        tags["tmail"] = upload.uploader

    base = sanitize_filename(upload.original_filename)
    name = tag_codec.build_filename(tags, f"{base}.{upload.ext}")
    if tag_codec.decode_filename(name) != tags:
        raise ComposeFailure("Composed name does not decode to its tags.", name=name)
    return CanonicalName(name=name, base_name=name, tags=tags)


def _concat_segment(value: Optional[str]) -> Optional[str]:
    """One positional segment: whitespace removed, the ``_`` separator becomes ``-``."""
    if not value:
        return None
    return sanitize_segment(value.replace("_", "-"), keep_spaces=False)


def _compose_concat(upload: ValidatedUpload, config: EngineConfig) -> CanonicalName:
    parts = [
        _concat_segment(upload.type_code),
        normalize_date(upload.date),
        _concat_segment(upload.identifier),
        _concat_segment(upload.tenant),
        _concat_segment(upload.suffix),
    ]
    stem = "_".join(p for p in parts if p)
    if not stem:
        raise ComposeFailure("Composed name is empty.")
    base_name = f"{stem}.{upload.ext}"

    tag = None
    name = base_name
    if config.person_tag and upload.uploader:
        tag = f"u-{person_tag(upload.uploader)}"
        name = f"{stem}_{tag}.{upload.ext}"
    return CanonicalName(name=name, base_name=base_name, person_tag=tag)


def compose_canonical_name(upload: ValidatedUpload, config: EngineConfig) -> CanonicalName:
    """Deterministic canonical name for a validated upload."""
    if config.composition_scheme == SCHEME_CONCAT:
        composed = _compose_concat(upload, config)
    else:
        composed = _compose_tagged(upload)
    if not composed.name or "/" in composed.name:
        raise ComposeFailure("Composed name is not a valid object key.", name=composed.name)
    return composed


# ---------------------------------------------------------------------------
# Routing + delegation
# ---------------------------------------------------------------------------


def route_bucket(type_code: str, config: EngineConfig) -> str:
    return config.misc_bucket if is_other_type(type_code) else config.intake_bucket


def issue_upload_target(canonical_name: str, bucket: str, config: EngineConfig) -> UploadTarget:
    """Mint a presigned PUT URL for ``bucket/canonical_name``."""
    try:
        url = _get_s3().generate_presigned_url(
            "put_object",
            Params={"Bucket": bucket, "Key": canonical_name},
            ExpiresIn=config.upload_url_ttl_seconds,
            HttpMethod="PUT",
        )
    except (BotoCoreError, ClientError) as exc:
        store_error = _store_error_message(exc)
        logger.error("presign failed for %s/%s: %s", bucket, canonical_name, store_error)
        raise DelegateFailure(
            f"Could not create an upload URL: {store_error}",
            bucket=bucket,
            store_error=store_error,
        ) from exc
    if not url:
        raise DelegateFailure("Object store returned no upload URL.", bucket=bucket)
    return UploadTarget(
        bucket=bucket,
        path=canonical_name,
        signed_url=url,
        expires_in=config.upload_url_ttl_seconds,
    )


def prepare_upload(
    request: UploadRequest,
    config: EngineConfig,
    *,
    type_lookup: Callable[[str], Optional[TypeRule]],
    identifier_exists: Optional[Callable[[str, str], bool]] = None,
) -> PreparedUpload:
    """Run a request from ``received`` to ``routed``.

    Errors carry the stage they were raised in under ``details["stage"]``.
    """
    stage = STAGE_RECEIVED
    try:
        source = resolve_type_source(request)
        rule = resolve_type_rule(source.code, type_lookup, config)
        if rule is None:
            raise UnknownType(
                f"Unknown document type '{source.code}'.",
                field="type",
                type=source.code,
            )
        upload = validate(request, source, rule, config, identifier_exists)
        stage = STAGE_VALIDATED
        name = compose_canonical_name(upload, config)
        stage = STAGE_COMPOSED
        bucket = route_bucket(upload.type_code, config)
    except IntakeError as exc:
        exc.details.setdefault("stage", stage)
        raise
    return PreparedUpload(upload=upload, name=name, bucket=bucket)
