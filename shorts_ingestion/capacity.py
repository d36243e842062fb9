"""
Provisioned write capacity management for the target DynamoDB table.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from shorts_ingestion.aws_clients import AwsClients
from shorts_ingestion.exceptions import CapacitySetFailure, ConfigurationError
from shorts_ingestion.utils.logging_utils import log_failure, log_progress


@dataclass(frozen=True)
class CapacityChange:
    """Outcome of a capacity change request."""

    table: str
    previous_units: Optional[int]
    new_units: Optional[int]
    error: Optional[CapacitySetFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CapacityManager:
    """
    Raises and lowers a table's provisioned write capacity.

    Failures are logged and returned in the CapacityChange, never raised.
    """

    def __init__(
        self,
        clients: AwsClients,
        wait_until_active: bool = False,
        poll_interval: float = 5.0,
        max_polls: int = 60,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.clients = clients
        self.wait_until_active = wait_until_active
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep

    def set_write_capacity(self, table: str, units: int) -> CapacityChange:
        """
        Set the table's provisioned write units, keeping read units unchanged.

        Setting the current value makes no update call.

        Args:
            table: DynamoDB table name
            units: Target write capacity units

        Returns:
            CapacityChange with the previous and resulting write units

        Raises:
            ConfigurationError: If units is not positive.
        """
        if units <= 0:
            raise ConfigurationError(f"Write capacity must be positive, got {units}")

        section = f"Capacity - {table}"
        try:
            read_units, previous_units, _ = self.clients.describe_provisioned_throughput(table)
        except (ClientError, BotoCoreError) as e:
            return self._failed(table, units, None, f"describe_table failed: {e}")

        if previous_units == units:
            log_progress(section, f"Write capacity already at {units} units")
            return CapacityChange(table, previous_units, units)

        try:
            new_units = self.clients.update_provisioned_throughput(table, read_units, units)
        except (ClientError, BotoCoreError) as e:
            return self._failed(table, units, previous_units, f"update_table failed: {e}")

        log_progress(section, f"Write capacity changed from {previous_units} to {new_units} units")

        if self.wait_until_active:
            self._wait_for_active(table)

        return CapacityChange(table, previous_units, new_units)

    def _wait_for_active(self, table: str) -> None:
        section = f"Capacity - {table}"
        for _ in range(self.max_polls):
            try:
                _, _, status = self.clients.describe_provisioned_throughput(table)
            except (ClientError, BotoCoreError) as e:
                log_failure(CapacitySetFailure.category, section, f"status poll failed: {e}")
                return
            if status == "ACTIVE":
                return
            self._sleep(self.poll_interval)
        log_failure(
            CapacitySetFailure.category,
            section,
            f"table not ACTIVE after {self.max_polls} polls",
        )

    def _failed(
        self, table: str, units: int, previous_units: Optional[int], reason: str
    ) -> CapacityChange:
        error = CapacitySetFailure(table, units, reason)
        log_failure(error.category, f"Capacity - {table}", error)
        return CapacityChange(table, previous_units, previous_units, error)
