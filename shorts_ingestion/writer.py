"""
Throttled concurrent writer.

Drains dated records into DynamoDB in fixed pacing windows. Each window
schedules at most `write_units_per_window` independent put_item calls, taken
from the pending queue in arrival order through a bounded burst buffer.
Scheduling a window does not wait for the previous window's writes; the
number of writes actually in flight is bounded by the worker pool size
(`max_outstanding`), which is independent of the burst buffer.
"""

import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from botocore.exceptions import ClientError

from shorts_ingestion.aws_clients import AwsClients
from shorts_ingestion.exceptions import ConfigurationError, WriteFailure
from shorts_ingestion.models import DatedShortRecord
from shorts_ingestion.utils.logging_utils import log_failure, log_progress


@dataclass
class DrainReport:
    """
    Counters for one drain.

    succeeded and failed are only final once ThrottledWriter.join() returned.
    """

    attempted: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    cycles: List[int] = field(default_factory=list)
    max_buffered: int = 0
    max_in_flight: int = 0
    in_flight: int = field(default=0, repr=False)

    def as_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "dispatched": self.dispatched,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "cycles": len(self.cycles),
        }


class ThrottledWriter:
    """
    Rate-limited, capacity-bounded dispatcher of DynamoDB writes.

    Args:
        clients: AWS clients used for put_item
        table: Target table name
        max_outstanding: Worker pool size, i.e. the maximum writes in flight
        wait_each_cycle: Wait for a window's writes before starting the next
        clock: Monotonic clock used to pace windows
        sleep: Sleep function used between windows
    """

    def __init__(
        self,
        clients: AwsClients,
        table: str,
        max_outstanding: int = 50,
        wait_each_cycle: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_outstanding <= 0:
            raise ConfigurationError(f"max_outstanding must be positive, got {max_outstanding}")
        self.clients = clients
        self.table = table
        self.max_outstanding = max_outstanding
        self.wait_each_cycle = wait_each_cycle
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._report = DrainReport()

    @property
    def section(self) -> str:
        return f"Throttled Writer - {self.table}"

    def drain(
        self,
        records: Iterable[DatedShortRecord],
        write_units_per_window: int,
        window: float = 1.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> DrainReport:
        """
        Schedule a write for every record, window by window.

        Returns as soon as the last window is scheduled. Call join() to wait
        for the writes themselves. A previous drain that was not joined is
        joined first, so every write counts toward the report of the drain
        that scheduled it.

        Args:
            records: Records to write, in dispatch order
            write_units_per_window: Burst buffer size, i.e. writes per window
            window: Seconds between the starts of two consecutive windows
            cancel_event: When set, no further window is started

        Returns:
            DrainReport for this drain

        Raises:
            ConfigurationError: If write_units_per_window is not positive or
                window is negative.
        """
        if write_units_per_window <= 0:
            raise ConfigurationError(
                f"write_units_per_window must be positive, got {write_units_per_window}"
            )
        if window < 0:
            raise ConfigurationError(f"window must not be negative, got {window}")

        if self._executor is not None:
            log_progress(self.section, "Waiting for the previous drain before starting a new one")
            self.join()

        pending: "queue.Queue[DatedShortRecord]" = queue.Queue()
        for record in records:
            pending.put_nowait(record)

        burst: "queue.Queue[DatedShortRecord]" = queue.Queue(maxsize=write_units_per_window)
        report = DrainReport()
        self._report = report
        self._futures = []

        if pending.empty():
            log_progress(self.section, "No records to write")
            return report

        log_progress(
            self.section,
            f"Draining {pending.qsize()} records at {write_units_per_window} writes per {window}s",
        )

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_outstanding, thread_name_prefix="shorts-writer"
        )

        while not pending.empty():
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                report.skipped = pending.qsize()
                log_progress(
                    self.section,
                    f"Cancelled after {len(report.cycles)} windows, {report.skipped} records not written",
                )
                break

            cycle_start = self._clock()

            # Fill the burst buffer up to capacity or until no records are left
            while not burst.full() and not pending.empty():
                burst.put_nowait(pending.get_nowait())
            report.max_buffered = max(report.max_buffered, burst.qsize())

            # One independent write per buffered record
            cycle_futures = []
            while not burst.empty():
                record = burst.get_nowait()
                report.attempted += 1
                try:
                    future = self._executor.submit(self._put_record, record, report)
                except RuntimeError as e:
                    self._record_failure(record, report, f"could not be scheduled: {e}")
                    continue
                report.dispatched += 1
                cycle_futures.append(future)

            report.cycles.append(len(cycle_futures))
            self._futures.extend(cycle_futures)

            if self.wait_each_cycle:
                wait(cycle_futures)

            # Windows start one interval apart, like a ticker
            if not pending.empty():
                remaining = window - (self._clock() - cycle_start)
                if remaining > 0:
                    self._sleep(remaining)

        log_progress(
            self.section,
            f"Scheduled {report.dispatched} of {report.attempted} writes in {len(report.cycles)} windows",
        )
        return report

    def join(self, timeout: Optional[float] = None) -> DrainReport:
        """
        Wait for every write scheduled by the last drain.

        Args:
            timeout: Maximum seconds to wait, None to wait indefinitely

        Returns:
            The last drain's report
        """
        if self._futures:
            _, not_done = wait(self._futures, timeout=timeout)
            if not_done:
                log_progress(self.section, f"{len(not_done)} writes still outstanding after {timeout}s")
        if self._executor is not None:
            self._executor.shutdown(wait=timeout is None)
            self._executor = None
        report = self._report
        log_progress(
            self.section,
            f"Writes complete: {report.succeeded} succeeded, {report.failed} failed",
        )
        return report

    def _put_record(self, record: DatedShortRecord, report: DrainReport) -> bool:
        with self._lock:
            report.in_flight += 1
            report.max_in_flight = max(report.max_in_flight, report.in_flight)
        try:
            self.clients.put_dynamodb_item(self.table, record.to_dynamodb_item())
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            self._record_failure(record, report, f"{code}: {e}")
            return False
        except Exception as e:
            self._record_failure(record, report, str(e))
            return False
        finally:
            with self._lock:
                report.in_flight -= 1

        with self._lock:
            report.succeeded += 1
        return True

    def _record_failure(
        self, record: DatedShortRecord, report: DrainReport, reason: str
    ) -> None:
        failure = WriteFailure(record.code, reason)
        log_failure(failure.category, self.section, failure)
        with self._lock:
            report.failed += 1
