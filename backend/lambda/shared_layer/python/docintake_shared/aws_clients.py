"""docintake_shared.aws_clients — Lazy-singleton AWS service clients.

Provides factory functions that create boto3 clients on first call and
cache them for subsequent invocations. This avoids paying the boto3 client
construction cost on cold starts until the client is actually needed.
"""

from __future__ import annotations

import os
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

# ---------------------------------------------------------------------------
# Default region (overridable via env)
# ---------------------------------------------------------------------------

DYNAMODB_REGION: str = os.environ.get("DYNAMODB_REGION", "eu-west-1")
S3_REGION: str = os.environ.get("S3_REGION", os.environ.get("DYNAMODB_REGION", "eu-west-1"))

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_s3 = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _ddb


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton.

    Presigned URLs need SigV4 and a regional endpoint.
    """
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            region_name=region or S3_REGION,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
    return _s3


def _store_error_message(exc: Exception) -> str:
    """Message the AWS service returned, else the botocore text."""
    if isinstance(exc, ClientError):
        message = (exc.response.get("Error") or {}).get("Message")
        if message:
            return str(message)
    return str(exc)
