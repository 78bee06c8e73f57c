from __future__ import annotations

import boto3
from botocore.config import Config

from .settings import Settings


def build_dynamodb(settings: Settings):
    session = boto3.session.Session(region_name=settings.aws_region or "us-east-1")
    config = Config(
        connect_timeout=settings.ddb_connect_timeout_seconds,
        read_timeout=settings.ddb_read_timeout_seconds,
        retries={"max_attempts": 2, "mode": "standard"},
    )
    return session.resource("dynamodb", config=config)
