#!/usr/bin/env python3
"""reindex_intake_bucket.py — Index uploaded intake files into the documents table.

Lists the intake bucket, decodes each object key with the tag codec and
writes one document row per tagged key into the DynamoDB documents table so
the document_query Lambda can search it. Keys that do not decode (uploads
from before the tagged naming scheme, manual drops) are reported and skipped.

Usage:
    # Dry-run (default — shows what would be written, no DynamoDB writes):
    python3 tools/reindex_intake_bucket.py

    # Live write:
    python3 tools/reindex_intake_bucket.py --write

    # Custom bucket/table/prefix:
    python3 tools/reindex_intake_bucket.py \\
        --bucket inbox \\
        --prefix 2024/ \\
        --table documents \\
        --region eu-west-1 \\
        --write

Requires:
    - AWS credentials with s3:ListBucket on the bucket and dynamodb:PutItem on the table
    - the project installed (pip install -e .) so docintake_shared is importable

Re-running is safe: rows are keyed by a hash of their storage path and
existing rows are never overwritten.
"""

from __future__ import annotations

import argparse
import datetime as dt
import hashlib
import os
import re
import sys
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from docintake_shared import tag_codec
from docintake_shared.serialization import _now_z, _serialize_item

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_BUCKET = os.environ.get("INTAKE_BUCKET", "inbox")
DEFAULT_TABLE = os.environ.get("DOCUMENTS_TABLE", "documents")
DEFAULT_REGION = os.environ.get("DYNAMODB_REGION", "eu-west-1")
DEFAULT_TENANT_PREFIXES = os.environ.get("TENANT_CASE_PREFIXES", "1.7,1.9.5.1")

SCOPES = ("asset", "spv", "fund")
_YEAR_RE = re.compile(r"^\d{4}$")
_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")
_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# ---------------------------------------------------------------------------
# AWS helpers
# ---------------------------------------------------------------------------

def _get_s3(region: str):
    return boto3.client("s3", region_name=region)


def _get_ddb(region: str):
    return boto3.client("dynamodb", region_name=region)


def iter_keys(s3, bucket: str, prefix: str = "") -> Iterator[Tuple[str, Optional[dt.datetime]]]:
    """Yield ``(key, last_modified)`` for every object under ``prefix``."""
    paginator = s3.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for obj in page.get("Contents", []):
            yield obj["Key"], obj.get("LastModified")


def _put_row(ddb, table: str, row: Dict[str, Any]) -> bool:
    try:
        ddb.put_item(
            TableName=table,
            Item=_serialize_item(row),
            ConditionExpression="attribute_not_exists(id)",
        )
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return False  # Already indexed
        raise


# ---------------------------------------------------------------------------
# Row construction
# ---------------------------------------------------------------------------

def _full_date(value: str) -> Optional[str]:
    """Widen ``YYYY`` / ``YYYY-MM`` so doc_date range filters compare correctly."""
    if _YEAR_RE.match(value):
        return f"{value}-01-01"
    if _MONTH_RE.match(value):
        return f"{value}-01"
    if _DAY_RE.match(value):
        return value
    return None


def tenant_from_type(type_code: str, prefixes: List[str]) -> Optional[str]:
    """Tenant number folded into a tenant-case type code (``1.7.42`` -> ``42``)."""
    for prefix in sorted(prefixes, key=len, reverse=True):
        if type_code == prefix or type_code.startswith(prefix + "."):
            segs = type_code.split(".")
            n = len(prefix.split("."))
            if len(segs) > n and segs[n].isdigit():
                return segs[n]
            return None
    return None


def _document_id(storage_path: str) -> str:
    return hashlib.sha256(storage_path.encode("utf-8")).hexdigest()[:32]


def tags_to_row(
    bucket: str,
    key: str,
    tags: Dict[str, str],
    *,
    tenant_prefixes: List[str],
    last_modified: Optional[dt.datetime] = None,
) -> Optional[Dict[str, Any]]:
    """Map decoded tags to a documents-table row; ``None`` without ``ttype``."""
    type_code = (tags.get("ttype") or "").strip()
    if not type_code:
        return None
    storage_path = f"{bucket}/{key}"
    scope = (tags.get("tscope") or "").strip().lower()
    row: Dict[str, Any] = {
        "id": _document_id(storage_path),
        "type": type_code,
        "name": tags.get("tname") or None,
        "storage_path": storage_path,
        "tenant": tenant_from_type(type_code, tenant_prefixes),
        "doc_date": _full_date(tags.get("tdate") or ""),
        "uploaded_by": tags.get("tmail") or None,
        "created_at": (
            last_modified.astimezone(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            if last_modified else _now_z()
        ),
        "indexed_at": _now_z(),
    }
    if scope in SCOPES:
        row["scope"] = scope
        row[scope] = tags.get(f"t{scope}") or None
    return row


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Index tagged intake uploads into the documents table")
    parser.add_argument("--bucket", default=DEFAULT_BUCKET,
                        help=f"Intake bucket to list (default: {DEFAULT_BUCKET})")
    parser.add_argument("--prefix", default="",
                        help="Only index keys under this prefix")
    parser.add_argument("--table", default=DEFAULT_TABLE,
                        help=f"DynamoDB documents table (default: {DEFAULT_TABLE})")
    parser.add_argument("--region", default=DEFAULT_REGION,
                        help=f"AWS region (default: {DEFAULT_REGION})")
    parser.add_argument("--tenant-prefixes", default=DEFAULT_TENANT_PREFIXES,
                        help=f"Comma-separated tenant-case type prefixes (default: {DEFAULT_TENANT_PREFIXES})")
    parser.add_argument("--write", action="store_true",
                        help="Actually write to DynamoDB (default: dry-run)")
    args = parser.parse_args(argv)

    prefixes = [p.strip() for p in args.tenant_prefixes.split(",") if p.strip()]
    s3 = _get_s3(args.region)
    ddb = _get_ddb(args.region) if args.write else None

    mode = "LIVE WRITE" if args.write else "DRY RUN"
    print(f"\n{'='*60}")
    print(f"  Intake reindex — {mode}")
    print(f"{'='*60}")
    print(f"  Bucket   : s3://{args.bucket}/{args.prefix}")
    print(f"  Table    : {args.table} ({args.region})")
    print()

    seen = written = skipped = undecodable = errors = 0

    try:
        for key, last_modified in iter_keys(s3, args.bucket, args.prefix):
            seen += 1
            name = key.rsplit("/", 1)[-1]
            tags = tag_codec.decode_filename(name)
            row = tags_to_row(
                args.bucket, key, tags, tenant_prefixes=prefixes, last_modified=last_modified,
            ) if tags else None
            if row is None:
                print(f"  NOTAG {key}")
                undecodable += 1
                continue

            label = f"{row['storage_path']}  type={row['type']}  date={row.get('doc_date')}"
            if not args.write:
                print(f"  WOULD {label}")
                continue

            try:
                if _put_row(ddb, args.table, row):
                    print(f"  WRITE {label}")
                    written += 1
                else:
                    print(f"  SKIP  {label}  (already indexed)")
                    skipped += 1
            except ClientError as e:
                print(f"  ERROR {label}: {e}", file=sys.stderr)
                errors += 1

            # Pace writes to stay under table write capacity
            time.sleep(0.02)
    except ClientError as e:
        print(f"[ERROR] listing s3://{args.bucket} failed: {e}", file=sys.stderr)
        return 1

    print()
    print(f"{'='*60}")
    print(f"  Objects     : {seen}")
    print(f"  Undecodable : {undecodable}")
    if args.write:
        print(f"  Written     : {written}")
        print(f"  Skipped     : {skipped}  (already indexed)")
        print(f"  Errors      : {errors}")
    else:
        print(f"  Would write : {seen - undecodable}")
        print("  Re-run with --write to execute.")
    print(f"{'='*60}\n")
    if errors:
        print("[WARN] Some writes failed. Re-run to retry — the script is idempotent.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
