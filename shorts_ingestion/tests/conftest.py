"""
Shared fixtures for the ingestion tests.
"""

import json

import pytest

from shorts_ingestion.models import DatedShortRecord, ShortRecord


def make_record(code: str, shorts: int = 100) -> ShortRecord:
    return ShortRecord(
        name=f"{code} LIMITED",
        code=code,
        shorts=shorts,
        total=10000,
        percent=1.0,
        industry="Materials",
    )


@pytest.fixture
def records():
    return [make_record(code) for code in ("AAA", "BBB", "CCC")]


@pytest.fixture
def dated_records(records):
    return [DatedShortRecord(record, 20240115) for record in records]


@pytest.fixture
def batch_payload():
    return json.dumps(
        {
            "Result": [
                {
                    "Name": "BHP GROUP LIMITED",
                    "Code": "BHP",
                    "Shorts": 12500000,
                    "Total": 5060000000,
                    "Percent": 0.25,
                    "Industry": "Materials",
                },
                {
                    "Name": "ZIP CO LIMITED",
                    "Code": "ZIP",
                    "Shorts": 86000000,
                    "Total": 1000000000,
                    "Percent": 8.6,
                    "Industry": "Financials",
                },
            ]
        }
    ).encode("utf-8")
