"""
Daily batch source.

Downloads the day's short-position JSON from S3 in a single attempt and
parses it into ShortRecord objects.
"""

import json
from datetime import date
from typing import Any, List

from botocore.exceptions import BotoCoreError, ClientError

from shorts_ingestion.aws_clients import AwsClients
from shorts_ingestion.exceptions import (
    BatchNotFound,
    BatchTransportError,
    MalformedBatch,
)
from shorts_ingestion.models import ShortRecord
from shorts_ingestion.utils.logging_utils import log_progress

NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


def daily_key(prefix: str, day: date) -> str:
    """
    Build the S3 key of a day's batch.

    Args:
        prefix: Key prefix, without trailing slash
        day: Calendar day of the batch

    Returns:
        str: Key of the form <prefix>/YYYYMMDD.json
    """
    return f"{prefix.rstrip('/')}/{day.strftime('%Y%m%d')}.json"


def parse_batch(document: Any, bucket: str = "", key: str = "") -> List[ShortRecord]:
    """
    Convert a decoded batch document into records, preserving order.

    Raises:
        MalformedBatch: If the document does not match {"Result": [...]}.
    """
    if not isinstance(document, dict) or not isinstance(document.get("Result"), list):
        raise MalformedBatch(bucket, key, "payload has no 'Result' list")

    records = []
    for index, raw in enumerate(document["Result"]):
        if not isinstance(raw, dict):
            raise MalformedBatch(bucket, key, f"entry {index} is not an object")
        try:
            records.append(ShortRecord.from_json(raw))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedBatch(bucket, key, f"entry {index}: {e}") from e
    return records


class BatchSource:
    """Fetches the daily batch from S3."""

    def __init__(self, clients: AwsClients):
        self.clients = clients

    def fetch_daily(self, bucket: str, key: str) -> List[ShortRecord]:
        """
        Fetch and parse one day's batch. No retry is attempted.

        Args:
            bucket: Bucket holding the daily batches
            key: Object key of the batch, see daily_key()

        Returns:
            List of records in file order; empty when the batch is empty

        Raises:
            BatchNotFound: The object does not exist.
            BatchTransportError: S3 could not be reached or refused the request.
            MalformedBatch: The payload is not a valid batch.
        """
        try:
            records = self.clients.fetch_json_from_s3(
                bucket, key, lambda document: parse_batch(document, bucket, key)
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in NOT_FOUND_CODES:
                raise BatchNotFound(bucket, key, "object does not exist") from e
            raise BatchTransportError(bucket, key, str(e)) from e
        except BotoCoreError as e:
            raise BatchTransportError(bucket, key, str(e)) from e
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedBatch(bucket, key, f"invalid JSON: {e}") from e

        log_progress("Batch Source", f"Parsed {len(records)} records from s3://{bucket}/{key}")
        return records
