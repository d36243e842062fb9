"""
Unit tests for the ingestion orchestrator.
"""

import threading
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from shorts_ingestion.capacity import CapacityChange, CapacityManager
from shorts_ingestion.exceptions import BatchNotFound, CapacitySetFailure, LeaseUnavailable
from shorts_ingestion.ingestor import Ingestor, IngestorState
from shorts_ingestion.lease import DynamoDBTableLease, InProcessTableLease
from shorts_ingestion.source import BatchSource
from shorts_ingestion.tests.conftest import make_record
from shorts_ingestion.writer import DrainReport, ThrottledWriter

RUN_TIME = datetime(2024, 1, 15, 6, 30, tzinfo=timezone.utc)


def _capacity(calls):
    capacity = MagicMock(spec=CapacityManager)

    def set_write_capacity(table, units):
        calls.append(("capacity", units))
        return CapacityChange(table, 5, units)

    capacity.set_write_capacity.side_effect = set_write_capacity
    return capacity


def _source(records, calls):
    source = MagicMock(spec=BatchSource)

    def fetch_daily(bucket, key):
        calls.append(("fetch", key))
        return records

    source.fetch_daily.side_effect = fetch_daily
    return source


def _writer(calls):
    writer = MagicMock(spec=ThrottledWriter)
    report = DrainReport()

    def drain(records, rate, window, cancel_event):
        calls.append(("drain", rate))
        report.attempted = report.dispatched = report.succeeded = len(records)
        return report

    def join():
        calls.append(("join", None))
        return report

    writer.drain.side_effect = drain
    writer.join.side_effect = join
    return writer


def _ingestor(source, capacity, writer, **kwargs):
    return Ingestor(
        source=source,
        capacity=capacity,
        writer=writer,
        bucket="shorts-bucket",
        prefix="testShortedData",
        table="testShorts",
        bulk_units=25,
        steady_units=5,
        now=lambda: RUN_TIME,
        lease=kwargs.pop("lease", InProcessTableLease()),
        **kwargs,
    )


class TestIngestor:
    """Test run sequencing and failure handling."""

    def test_successful_run_order(self, records):
        calls = []
        ingestor = _ingestor(_source(records, calls), _capacity(calls), _writer(calls))

        result = ingestor.run()

        assert calls == [
            ("fetch", "testShortedData/20240115.json"),
            ("capacity", 25),
            ("drain", 25),
            ("join", None),
            ("capacity", 5),
        ]
        assert result.status == "success"
        assert result.records == 3
        assert result.date == 20240115
        assert result.states == [
            IngestorState.IDLE,
            IngestorState.FETCHING,
            IngestorState.CAPACITY_RAISED,
            IngestorState.DRAINING,
            IngestorState.CAPACITY_RESTORED,
            IngestorState.IDLE,
        ]
        assert ingestor.state == IngestorState.IDLE

    def test_every_record_shares_one_date(self):
        calls = []
        records = [make_record(f"C{i:03d}") for i in range(50)]
        writer = _writer(calls)
        ingestor = _ingestor(_source(records, calls), _capacity(calls), writer)

        ingestor.run()

        dated = writer.drain.call_args.args[0]
        assert len(dated) == 50
        assert {record.date for record in dated} == {20240115}
        assert [record.record for record in dated] == records

    def test_explicit_day_selects_key(self, records):
        calls = []
        ingestor = _ingestor(_source(records, calls), _capacity(calls), _writer(calls))

        result = ingestor.run(date(2024, 2, 29))

        assert calls[0] == ("fetch", "testShortedData/20240229.json")
        assert result.key == "testShortedData/20240229.json"

    def test_fetch_failure_touches_nothing(self, capsys):
        """NotFound aborts the run before any capacity change or write."""
        source = MagicMock(spec=BatchSource)
        source.fetch_daily.side_effect = BatchNotFound(
            "shorts-bucket", "testShortedData/20240115.json", "object does not exist"
        )
        capacity = MagicMock(spec=CapacityManager)
        writer = MagicMock(spec=ThrottledWriter)

        result = _ingestor(source, capacity, writer).run()

        assert result.status == "fetch_failed"
        capacity.set_write_capacity.assert_not_called()
        writer.drain.assert_not_called()
        assert result.states == [IngestorState.IDLE, IngestorState.FETCHING, IngestorState.IDLE]
        assert "Ingestion - testShorts | FetchFailure:" in capsys.readouterr().out

    def test_empty_batch_leaves_capacity_unchanged(self):
        calls = []
        capacity = _capacity(calls)
        writer = _writer(calls)

        result = _ingestor(_source([], calls), capacity, writer).run()

        assert result.status == "no_data"
        capacity.set_write_capacity.assert_not_called()
        writer.drain.assert_not_called()

    def test_all_writes_fail_capacity_still_restored(self):
        """Both puts fail: report counts them, and steady capacity is set exactly once after the drain."""
        calls = []
        clients = MagicMock()

        def put(table, item):
            calls.append(("put", item["Code"]["S"]))
            raise ClientError({"Error": {"Code": "InternalServerError"}}, "PutItem")

        clients.put_dynamodb_item.side_effect = put
        writer = ThrottledWriter(clients, "testShorts", clock=lambda: 0.0, sleep=MagicMock())
        capacity = _capacity(calls)
        records = [make_record("AAA"), make_record("BBB")]

        result = _ingestor(_source(records, calls), capacity, writer).run()

        assert result.report.attempted == 2
        assert result.report.dispatched == 2
        assert result.report.failed == 2
        assert calls[1] == ("capacity", 25)
        assert calls[-1] == ("capacity", 5)
        assert calls.count(("capacity", 5)) == 1
        assert {call for call in calls[2:-1]} == {("put", "AAA"), ("put", "BBB")}

    def test_raise_failure_paces_at_previous_units(self, records):
        calls = []
        capacity = MagicMock(spec=CapacityManager)
        capacity.set_write_capacity.side_effect = [
            CapacityChange("testShorts", 10, 10, CapacitySetFailure("testShorts", 25, "limit")),
            CapacityChange("testShorts", 10, 5),
        ]
        writer = _writer(calls)

        result = _ingestor(_source(records, calls), capacity, writer).run()

        assert ("drain", 10) in calls
        assert result.status == "success"
        assert not result.raise_change.ok

    def test_raise_failure_unknown_units_paces_at_steady(self, records):
        calls = []
        capacity = MagicMock(spec=CapacityManager)
        capacity.set_write_capacity.side_effect = [
            CapacityChange("testShorts", None, None, CapacitySetFailure("testShorts", 25, "down")),
            CapacityChange("testShorts", None, None, CapacitySetFailure("testShorts", 5, "down")),
        ]
        writer = _writer(calls)

        result = _ingestor(_source(records, calls), capacity, writer).run()

        assert ("drain", 5) in calls
        assert capacity.set_write_capacity.call_count == 2
        assert result.as_dict()["capacity_restored"] is False

    def test_drain_error_still_restores_capacity(self, records):
        calls = []
        capacity = _capacity(calls)
        writer = MagicMock(spec=ThrottledWriter)
        writer.drain.side_effect = RuntimeError("executor broken")

        with pytest.raises(RuntimeError):
            _ingestor(_source(records, calls), capacity, writer).run()

        assert calls[-1] == ("capacity", 5)

    def test_cancelled_run_restores_capacity(self):
        calls = []
        clients = MagicMock()
        cancel = threading.Event()
        writer = ThrottledWriter(
            clients,
            "testShorts",
            clock=lambda: 0.0,
            sleep=lambda seconds: cancel.set(),
        )
        capacity = _capacity(calls)
        records = [make_record(f"C{i:03d}") for i in range(60)]

        ingestor = _ingestor(_source(records, calls), capacity, writer, cancel_event=cancel)
        result = ingestor.run()

        assert result.status == "cancelled"
        assert result.report.attempted == 25
        assert result.report.skipped == 35
        assert calls[-1] == ("capacity", 5)

    def test_lease_held_by_another_run(self, records):
        calls = []
        capacity = _capacity(calls)
        writer = _writer(calls)
        lease = InProcessTableLease()

        with lease.hold("testShorts"):
            result = _ingestor(_source(records, calls), capacity, writer, lease=lease).run()

        assert result.status == "lease_unavailable"
        capacity.set_write_capacity.assert_not_called()
        writer.drain.assert_not_called()

    def test_lease_released_after_run(self, records):
        calls = []
        lease = InProcessTableLease()
        ingestor = _ingestor(_source(records, calls), _capacity(calls), _writer(calls), lease=lease)

        ingestor.run()

        with lease.hold("testShorts"):
            pass

    def test_cancel_sets_event(self):
        ingestor = _ingestor(MagicMock(), MagicMock(), MagicMock())
        ingestor.cancel()
        assert ingestor.cancel_event.is_set()

    def test_lease_unavailable_message(self):
        assert "testShorts" in str(LeaseUnavailable("testShorts"))


class TestFromConfig:
    """Test wiring from environment configuration."""

    @patch.multiple(
        "shorts_ingestion.ingestor.Config",
        S3_BUCKET_NAME="shorts-bucket",
        SHORTS_PREFIX="daily",
        DYNAMODB_TABLE_NAME="shortsTable",
        LOCK_TABLE_NAME="ingestionLocks",
        BULK_WRITE_UNITS=40,
        STEADY_WRITE_UNITS=4,
        WRITE_WINDOW_SECONDS=2.0,
        MAX_OUTSTANDING_WRITES=8,
    )
    def test_from_config(self):
        ingestor = Ingestor.from_config(clients=MagicMock())

        assert ingestor.bucket == "shorts-bucket"
        assert ingestor.prefix == "daily"
        assert ingestor.table == "shortsTable"
        assert (ingestor.bulk_units, ingestor.steady_units) == (40, 4)
        assert ingestor.window == 2.0
        assert ingestor.writer.max_outstanding == 8
        assert ingestor.writer.table == "shortsTable"
        assert isinstance(ingestor.lease, DynamoDBTableLease)
        assert ingestor.lease.lock_table == "ingestionLocks"


class TestReusedIngestor:
    """Test that one run's cancellation does not carry over to the next."""

    def test_cancel_during_fetch_skips_capacity(self, records):
        calls = []
        capacity = _capacity(calls)
        writer = _writer(calls)
        source = MagicMock(spec=BatchSource)
        ingestor = _ingestor(source, capacity, writer)

        def fetch_daily(bucket, key):
            ingestor.cancel()
            return records

        source.fetch_daily.side_effect = fetch_daily

        result = ingestor.run()

        assert result.status == "cancelled"
        capacity.set_write_capacity.assert_not_called()
        writer.drain.assert_not_called()

    def test_next_run_after_cancel_loads_normally(self, records):
        calls = []
        capacity = _capacity(calls)
        ingestor = _ingestor(_source(records, calls), capacity, _writer(calls))

        ingestor.cancel()
        first = ingestor.run()
        second = ingestor.run()

        assert first.status == "success"
        assert second.status == "success"
        assert second.report.attempted == 3
        assert [call for call in calls if call[0] == "capacity"] == [
            ("capacity", 25),
            ("capacity", 5),
            ("capacity", 25),
            ("capacity", 5),
        ]

    def test_cancel_mid_drain_then_rerun(self):
        calls = []
        clients = MagicMock()
        writer = ThrottledWriter(clients, "testShorts", clock=lambda: 0.0, sleep=MagicMock())
        records = [make_record(f"C{i:03d}") for i in range(60)]
        ingestor = _ingestor(_source(records, calls), _capacity(calls), writer)
        writer._sleep = lambda seconds: ingestor.cancel()

        first = ingestor.run()
        writer._sleep = MagicMock()
        second = ingestor.run()

        assert first.status == "cancelled"
        assert first.report.skipped == 35
        assert second.status == "success"
        assert second.report.attempted == 60
        assert second.report.cancelled is False
