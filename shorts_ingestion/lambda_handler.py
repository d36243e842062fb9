"""
AWS Lambda handler for the daily short-position load into DynamoDB.

Runs one ingestion for the configured table and returns the run summary.
"""

import json
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from shorts_ingestion.config import Config
from shorts_ingestion.exceptions import ConfigurationError
from shorts_ingestion.ingestor import Ingestor
from shorts_ingestion.utils.logging_utils import (
    log_section_start,
    log_section_complete,
    log_error,
)


def _requested_day(event: Optional[Dict[str, Any]]):
    """Parse an optional 'date' (YYYYMMDD) override from the event."""
    raw = (event or {}).get("date")
    if not raw:
        return None
    try:
        return datetime.strptime(str(raw), "%Y%m%d").date()
    except ValueError:
        raise ConfigurationError(f"Event date must be YYYYMMDD, got {raw!r}")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler for the daily load.

    Args:
        event: Lambda event; may carry a 'date' override (YYYYMMDD)
        context: Lambda context object

    Returns:
        Dict with statusCode and a JSON body describing the run
    """
    run_timestamp = datetime.now(UTC)

    try:
        log_section_start("Configuration Validation")
        Config.validate()
        day = _requested_day(event)
        log_section_complete("Configuration Validation")

        ingestor = Ingestor.from_config()
        result = ingestor.run(day)

        status_code = 200 if result.status in ("success", "no_data") else 500
        return {
            "statusCode": status_code,
            "body": json.dumps(
                {"run_timestamp": run_timestamp.isoformat(), **result.as_dict()}
            ),
        }
    except Exception as e:
        log_error("Shorts Ingestion", str(e))

        return {
            "statusCode": 500,
            "body": json.dumps(
                {"error": str(e), "run_timestamp": run_timestamp.isoformat()}
            ),
        }
