"""taskcommand_shared.aws_clients — Lazy-singleton AWS service clients.

The DynamoDB client is created on first use and cached for the life of the
execution environment. Connect/read timeouts bound every store call.
"""

from __future__ import annotations

import os
from typing import Optional

import boto3
from botocore.config import Config

DYNAMODB_REGION: str = os.environ.get("DYNAMODB_REGION", "us-west-2")

_ddb = None


def _get_ddb(region: Optional[str] = None, timeout_seconds: float = 10.0):
    """Get (or create) the DynamoDB client singleton.

    Retries are left to the caller: a timed-out conditional write is reported,
    not replayed.
    """
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            config=Config(
                connect_timeout=timeout_seconds,
                read_timeout=timeout_seconds,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )
    return _ddb
