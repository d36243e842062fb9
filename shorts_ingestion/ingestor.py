"""
Ingestion orchestrator.

Sequences one daily run: fetch the batch, raise write capacity, stamp and
drain the records, restore write capacity.
"""

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, UTC
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from shorts_ingestion.aws_clients import AwsClients
from shorts_ingestion.capacity import CapacityChange, CapacityManager
from shorts_ingestion.config import Config
from shorts_ingestion.exceptions import FetchFailure, LeaseUnavailable
from shorts_ingestion.lease import DynamoDBTableLease, InProcessTableLease
from shorts_ingestion.models import DatedShortRecord, utc_date_stamp
from shorts_ingestion.source import BatchSource, daily_key
from shorts_ingestion.utils.logging_utils import (
    log_failure,
    log_progress,
    log_section_complete,
    log_section_start,
)
from shorts_ingestion.writer import DrainReport, ThrottledWriter


class IngestorState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CAPACITY_RAISED = "capacity_raised"
    DRAINING = "draining"
    CAPACITY_RESTORED = "capacity_restored"


@dataclass
class IngestionResult:
    """Summary of one ingestion run."""

    status: str
    bucket: str
    key: str
    records: int = 0
    date: Optional[int] = None
    report: Optional[DrainReport] = None
    raise_change: Optional[CapacityChange] = None
    restore_change: Optional[CapacityChange] = None
    error: Optional[str] = None
    states: List[IngestorState] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "source": f"s3://{self.bucket}/{self.key}",
            "records": self.records,
            "date": self.date,
            "writes": self.report.as_dict() if self.report else None,
            "capacity_raised": self.raise_change.ok if self.raise_change else None,
            "capacity_restored": self.restore_change.ok if self.restore_change else None,
            "error": self.error,
        }


class Ingestor:
    """
    Orchestrates a daily ingestion run for one table.

    The batch is fetched before any capacity change so that a missing or
    broken batch never raises capacity. Capacity is restored after the drain
    whatever its outcome.
    """

    def __init__(
        self,
        source: BatchSource,
        capacity: CapacityManager,
        writer: ThrottledWriter,
        bucket: str,
        prefix: str,
        table: str,
        bulk_units: int = 25,
        steady_units: int = 5,
        window: float = 1.0,
        lease: Optional[Any] = None,
        cancel_event: Optional[threading.Event] = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.source = source
        self.capacity = capacity
        self.writer = writer
        self.bucket = bucket
        self.prefix = prefix
        self.table = table
        self.bulk_units = bulk_units
        self.steady_units = steady_units
        self.window = window
        self.lease = lease if lease is not None else InProcessTableLease()
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._now = now
        self.state = IngestorState.IDLE
        self.history: List[IngestorState] = [IngestorState.IDLE]

    @classmethod
    def from_config(cls, clients: Optional[AwsClients] = None) -> "Ingestor":
        """Build an ingestor wired to AWS from the environment configuration."""
        clients = clients or AwsClients(max_pool_connections=Config.MAX_OUTSTANDING_WRITES)
        lease = (
            DynamoDBTableLease(clients, Config.LOCK_TABLE_NAME, Config.LEASE_TTL_SECONDS)
            if Config.LOCK_TABLE_NAME
            else InProcessTableLease()
        )
        return cls(
            source=BatchSource(clients),
            capacity=CapacityManager(clients),
            writer=ThrottledWriter(
                clients,
                Config.DYNAMODB_TABLE_NAME,
                max_outstanding=Config.MAX_OUTSTANDING_WRITES,
            ),
            bucket=Config.S3_BUCKET_NAME,
            prefix=Config.SHORTS_PREFIX,
            table=Config.DYNAMODB_TABLE_NAME,
            bulk_units=Config.BULK_WRITE_UNITS,
            steady_units=Config.STEADY_WRITE_UNITS,
            window=Config.WRITE_WINDOW_SECONDS,
            lease=lease,
        )

    def cancel(self) -> None:
        """
        Stop the run in progress.

        No further write windows are scheduled and capacity is still restored.
        The signal is cleared when the next run starts.
        """
        self.cancel_event.set()

    def _transition(self, state: IngestorState) -> None:
        self.state = state
        self.history.append(state)

    def _drain_rate(self, change: CapacityChange) -> int:
        if change.new_units and change.new_units > 0:
            return change.new_units
        log_progress(
            f"Ingestion - {self.table}",
            f"Write capacity unknown after raise, pacing at steady {self.steady_units} units",
        )
        return self.steady_units

    def run(self, day: Optional[date] = None) -> IngestionResult:
        """
        Run one ingestion.

        Args:
            day: Day of the batch to load; defaults to the current UTC day

        Returns:
            IngestionResult describing the run
        """
        section = f"Ingestion - {self.table}"
        started = self._now()
        key = daily_key(self.prefix, day or started.astimezone(UTC).date())
        result = IngestionResult(status="success", bucket=self.bucket, key=key)
        self.history = [IngestorState.IDLE]
        self.cancel_event.clear()

        log_section_start(section)
        self._transition(IngestorState.FETCHING)
        try:
            records = self.source.fetch_daily(self.bucket, key)
        except FetchFailure as e:
            log_failure(e.category, section, e)
            result.status = "fetch_failed"
            result.error = str(e)
            return self._finish(result, section)

        result.records = len(records)
        if not records:
            log_progress(section, "Batch is empty, leaving capacity unchanged")
            result.status = "no_data"
            return self._finish(result, section)

        if self.cancel_event.is_set():
            log_progress(section, "Cancelled before loading, leaving capacity unchanged")
            result.status = "cancelled"
            return self._finish(result, section)

        try:
            with self.lease.hold(self.table):
                self._load(records, started, result)
        except LeaseUnavailable as e:
            log_failure(e.category, section, e)
            result.status = "lease_unavailable"
            result.error = str(e)

        return self._finish(result, section)

    def _load(self, records, started: datetime, result: IngestionResult) -> None:
        result.raise_change = self.capacity.set_write_capacity(self.table, self.bulk_units)
        self._transition(IngestorState.CAPACITY_RAISED)
        rate = self._drain_rate(result.raise_change)

        try:
            result.date = utc_date_stamp(started)
            dated = [DatedShortRecord(record, result.date) for record in records]

            self._transition(IngestorState.DRAINING)
            self.writer.drain(dated, rate, self.window, self.cancel_event)
            result.report = self.writer.join()
            if result.report.cancelled:
                result.status = "cancelled"
        finally:
            result.restore_change = self.capacity.set_write_capacity(
                self.table, self.steady_units
            )
            self._transition(IngestorState.CAPACITY_RESTORED)

    def _finish(self, result: IngestionResult, section: str) -> IngestionResult:
        self._transition(IngestorState.IDLE)
        result.states = list(self.history)
        details = f"status {result.status}, {result.records} records"
        if result.report:
            details += f", {result.report.succeeded} written, {result.report.failed} failed"
        log_section_complete(section, details)
        return result
