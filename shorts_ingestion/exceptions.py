"""
Exception hierarchy for the short-position ingestion run.
"""


class IngestionError(Exception):
    """Base class for every ingestion failure."""

    category = "IngestionError"


class ConfigurationError(IngestionError, ValueError):
    """Invalid or missing configuration, raised before any work starts."""

    category = "ConfigurationError"


class FetchFailure(IngestionError):
    """The daily batch could not be fetched or parsed. Fatal to the run."""

    category = "FetchFailure"

    def __init__(self, bucket: str, key: str, reason: str):
        self.bucket = bucket
        self.key = key
        self.reason = reason
        super().__init__(f"s3://{bucket}/{key}: {reason}")


class BatchNotFound(FetchFailure):
    """The object for the requested day does not exist."""


class BatchTransportError(FetchFailure):
    """S3 could not be reached or returned an unexpected error."""


class MalformedBatch(FetchFailure):
    """The object exists but its payload does not match the batch schema."""


class CapacitySetFailure(IngestionError):
    """Provisioned write capacity could not be read or changed."""

    category = "CapacitySetFailure"

    def __init__(self, table: str, units: int, reason: str):
        self.table = table
        self.units = units
        self.reason = reason
        super().__init__(f"table {table} -> {units} write units: {reason}")


class WriteFailure(IngestionError):
    """A single record write was rejected by the store."""

    category = "WriteFailure"

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"record {code}: {reason}")


class LeaseUnavailable(IngestionError):
    """Another run currently holds the capacity lease for the table."""

    category = "LeaseUnavailable"

    def __init__(self, table: str, holder: str = ""):
        self.table = table
        self.holder = holder
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"capacity lease for table {table} is unavailable{detail}")
