"""
Record types for the daily short-position batch.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeSerializer

REQUIRED_FIELDS = ("Name", "Code", "Shorts", "Total", "Percent", "Industry")

_serializer = TypeSerializer()


def _integral(raw: Dict[str, Any], field: str) -> int:
    value = raw[field]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field} must be a number, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{field} must be a whole number, got {value!r}")
    return int(value)


def _number(raw: Dict[str, Any], field: str) -> float:
    value = raw[field]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field} must be a number, got {value!r}")
    return float(value)


def utc_date_stamp(now: Optional[datetime] = None) -> int:
    """
    Derive the YYYYMMDD integer date stamp for the current UTC day.

    Args:
        now: Optional timezone-aware instant to derive the stamp from

    Returns:
        int: Date stamp, e.g. 20240115
    """
    current = now.astimezone(UTC) if now else datetime.now(UTC)
    return int(current.strftime("%Y%m%d"))


@dataclass(frozen=True)
class ShortRecord:
    """One instrument's short position as published in the daily batch."""

    name: str
    code: str
    shorts: int
    total: int
    percent: float
    industry: str

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "ShortRecord":
        """
        Build a record from one entry of the batch's Result list.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a numeric field is not a number, or Shorts or Total
                is not a whole number.
        """
        missing = [field for field in REQUIRED_FIELDS if field not in raw]
        if missing:
            raise KeyError(f"missing fields: {', '.join(missing)}")
        return cls(
            name=str(raw["Name"]),
            code=str(raw["Code"]),
            shorts=_integral(raw, "Shorts"),
            total=_integral(raw, "Total"),
            percent=_number(raw, "Percent"),
            industry=str(raw["Industry"]),
        )


@dataclass(frozen=True)
class DatedShortRecord:
    """A short record stamped with the ingestion run's date."""

    record: ShortRecord
    date: int

    @property
    def code(self) -> str:
        return self.record.code

    def to_item(self) -> Dict[str, Any]:
        """Plain attribute mapping as persisted in the table."""
        return {
            "Name": self.record.name,
            "Code": self.record.code,
            "Shorts": self.record.shorts,
            "Total": self.record.total,
            "Percent": Decimal(str(self.record.percent)),
            "Industry": self.record.industry,
            "Date": self.date,
        }

    def to_dynamodb_item(self) -> Dict[str, Dict[str, Any]]:
        """Attribute mapping in DynamoDB's typed wire representation."""
        return {key: _serializer.serialize(value) for key, value in self.to_item().items()}
