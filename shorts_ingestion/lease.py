"""
Per-table leases that serialise capacity changes.

A run must hold the lease for its table from before the capacity raise until
after the capacity restore.
"""

import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator

from botocore.exceptions import ClientError

from shorts_ingestion.aws_clients import AwsClients
from shorts_ingestion.exceptions import LeaseUnavailable
from shorts_ingestion.utils.logging_utils import log_error, log_progress


class InProcessTableLease:
    """Lease backed by one lock per table name, shared by the whole process."""

    _locks: Dict[str, threading.Lock] = {}
    _registry_lock = threading.Lock()

    def _lock_for(self, table: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(table, threading.Lock())

    @contextmanager
    def hold(self, table: str) -> Iterator[None]:
        lock = self._lock_for(table)
        if not lock.acquire(blocking=False):
            raise LeaseUnavailable(table)
        try:
            yield
        finally:
            lock.release()


class DynamoDBTableLease:
    """
    Lease stored as an item in a DynamoDB lock table.

    The item is keyed on table_name and carries an expiry so that a crashed
    run does not hold the lease forever.
    """

    def __init__(
        self,
        clients: AwsClients,
        lock_table: str,
        ttl_seconds: int = 7200,
        clock: Callable[[], float] = time.time,
    ):
        self.clients = clients
        self.lock_table = lock_table
        self.ttl_seconds = ttl_seconds
        self.owner = f"ingestor-{uuid.uuid4()}"
        self._clock = clock

    def acquire(self, table: str) -> None:
        """
        Take the lease for a table.

        Raises:
            LeaseUnavailable: If an unexpired lease is held by another owner.
        """
        now = int(self._clock())
        try:
            self.clients.dynamodb.put_item(
                TableName=self.lock_table,
                Item={
                    "table_name": {"S": table},
                    "owner": {"S": self.owner},
                    "expires_at": {"N": str(now + self.ttl_seconds)},
                },
                ConditionExpression="attribute_not_exists(table_name) OR expires_at < :now",
                ExpressionAttributeValues={":now": {"N": str(now)}},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise LeaseUnavailable(table) from e
            raise
        log_progress(f"Lease - {table}", f"Acquired by {self.owner}")

    def release(self, table: str) -> None:
        try:
            self.clients.dynamodb.delete_item(
                TableName=self.lock_table,
                Key={"table_name": {"S": table}},
                ConditionExpression="#owner = :owner",
                ExpressionAttributeNames={"#owner": "owner"},
                ExpressionAttributeValues={":owner": {"S": self.owner}},
            )
        except ClientError as e:
            # Lease expired and was taken over, or the item is already gone.
            log_error(f"Lease - {table}", f"Failed to release lease: {e}")
            return
        log_progress(f"Lease - {table}", f"Released by {self.owner}")

    @contextmanager
    def hold(self, table: str) -> Iterator[None]:
        self.acquire(table)
        try:
            yield
        finally:
            self.release(table)
