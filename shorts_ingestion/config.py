"""
Configuration module for the short-position ingestion.

Reads environment variables and provides the S3 location of the daily batch,
the target DynamoDB table, the capacity set-points and the writer pacing.
"""

import os
from datetime import date
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from shorts_ingestion.exceptions import ConfigurationError


def _load_dotenv_if_present(dotenv_path: Path) -> None:
    """
    Load environment variables from a .env file when running outside AWS.

    Existing environment variables are never overwritten.

    Args:
        dotenv_path (Path): Path to the .env file.
    """
    for aws_indicator in (
        "AWS_EXECUTION_ENV",
        "AWS_LAMBDA_FUNCTION_NAME",
        "ECS_CONTAINER_METADATA_URI",
    ):
        if os.getenv(aws_indicator):
            return
    if dotenv_path.exists():
        load_dotenv(dotenv_path=dotenv_path, override=False)


def _int_env(name: str, default: int) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return None


def _float_env(name: str, default: float) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return None


env_path = Path(__file__).parent.parent / ".env"
_load_dotenv_if_present(env_path)


class Config:
    """
    Configuration class that reads environment variables for the ingestion run.

    Integer and float settings that cannot be parsed are stored as None and
    reported by validate().
    """

    # S3 Configuration
    S3_BUCKET_NAME: str = os.getenv("S3_BUCKET_NAME", "")
    SHORTS_PREFIX: str = os.getenv("SHORTS_PREFIX", "testShortedData").rstrip("/")

    # DynamoDB Configuration
    DYNAMODB_TABLE_NAME: str = os.getenv("DYNAMODB_TABLE_NAME", "testShorts")
    LOCK_TABLE_NAME: str = os.getenv("LOCK_TABLE_NAME", "")
    LEASE_TTL_SECONDS: Optional[int] = _int_env("LEASE_TTL_SECONDS", 7200)

    # Capacity set-points
    BULK_WRITE_UNITS: Optional[int] = _int_env("BULK_WRITE_UNITS", 25)
    STEADY_WRITE_UNITS: Optional[int] = _int_env("STEADY_WRITE_UNITS", 5)

    # Writer pacing
    WRITE_WINDOW_SECONDS: Optional[float] = _float_env("WRITE_WINDOW_SECONDS", 1.0)
    MAX_OUTSTANDING_WRITES: Optional[int] = _int_env("MAX_OUTSTANDING_WRITES", 50)

    @classmethod
    def validate(cls) -> None:
        """
        Validate that required configuration values are present and coherent.

        Raises:
            ConfigurationError: If any configuration value is missing or invalid.
        """
        problems: List[str] = []

        if not cls.S3_BUCKET_NAME:
            problems.append("S3_BUCKET_NAME is required")
        if not cls.DYNAMODB_TABLE_NAME:
            problems.append("DYNAMODB_TABLE_NAME is required")

        for name in (
            "BULK_WRITE_UNITS",
            "STEADY_WRITE_UNITS",
            "MAX_OUTSTANDING_WRITES",
            "LEASE_TTL_SECONDS",
        ):
            value = getattr(cls, name)
            if value is None or value <= 0:
                problems.append(f"{name} must be a positive integer")

        if cls.WRITE_WINDOW_SECONDS is None or cls.WRITE_WINDOW_SECONDS < 0:
            problems.append("WRITE_WINDOW_SECONDS must be a non-negative number")

        if (
            cls.BULK_WRITE_UNITS
            and cls.STEADY_WRITE_UNITS
            and cls.STEADY_WRITE_UNITS > cls.BULK_WRITE_UNITS
        ):
            problems.append("STEADY_WRITE_UNITS must not exceed BULK_WRITE_UNITS")

        if problems:
            raise ConfigurationError(f"Invalid configuration: {'; '.join(problems)}")

    @classmethod
    def get_daily_key(cls, day: date) -> str:
        """
        Generate the S3 key of the batch for a given day.

        Args:
            day: Calendar day of the batch

        Returns:
            str: Key of the form <prefix>/YYYYMMDD.json
        """
        return f"{cls.SHORTS_PREFIX}/{day.strftime('%Y%m%d')}.json"
