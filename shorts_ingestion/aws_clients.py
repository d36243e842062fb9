"""
Thin wrappers around the boto3 S3, DynamoDB and Kinesis clients.

Every call is a single request with no retry of its own; errors from botocore
propagate to the caller after being logged.
"""

import csv
import io
import json
import os
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from shorts_ingestion.utils.logging_utils import log_progress, log_error

LAST_UPDATE_TABLE = "lastUpdate"


def get_boto3_session() -> boto3.Session:
    """
    Build a boto3 session from the environment.

    Explicit access keys win over AWS_PROFILE; otherwise the default
    credential chain is used.
    """
    aws_profile = os.getenv("AWS_PROFILE")
    aws_access_key = os.getenv("AWS_ACCESS_KEY_ID")
    aws_secret_key = os.getenv("AWS_SECRET_ACCESS_KEY")
    region = os.getenv("AWS_DEFAULT_REGION", "us-east-1")

    if aws_access_key and aws_secret_key:
        return boto3.Session(
            aws_access_key_id=aws_access_key,
            aws_secret_access_key=aws_secret_key,
            region_name=region,
        )
    if aws_profile:
        return boto3.Session(profile_name=aws_profile, region_name=region)
    return boto3.Session(region_name=region)


class AwsClients:
    """
    Holds the boto3 clients used by the ingestion run.

    Clients are created lazily from one session. The DynamoDB client's
    connection pool is sized so that concurrent writers do not queue on it.
    """

    def __init__(
        self,
        session: Optional[boto3.Session] = None,
        max_pool_connections: int = 50,
    ):
        self._session = session
        self._boto_config = BotoConfig(max_pool_connections=max_pool_connections)
        self._clients: Dict[str, Any] = {}

    def client(self, service: str) -> Any:
        if service not in self._clients:
            if self._session is None:
                self._session = get_boto3_session()
            self._clients[service] = self._session.client(
                service, config=self._boto_config
            )
        return self._clients[service]

    @property
    def s3(self) -> Any:
        return self.client("s3")

    @property
    def dynamodb(self) -> Any:
        return self.client("dynamodb")

    @property
    def kinesis(self) -> Any:
        return self.client("kinesis")

    # S3

    def get_object_bytes(self, bucket: str, key: str) -> bytes:
        response = self.s3.get_object(Bucket=bucket, Key=key)
        data = response["Body"].read()
        log_progress("S3", f"Downloaded s3://{bucket}/{key}, size {len(data)} bytes")
        return data

    def fetch_json_from_s3(
        self, bucket: str, key: str, parser: Callable[[Any], Any] = lambda doc: doc
    ) -> Any:
        """
        Download a JSON object and hand the decoded document to a parser.

        Args:
            bucket: Name of the bucket the file is retrieved from
            key: Key of the S3 object
            parser: Callable converting the decoded JSON document

        Returns:
            Whatever the parser returns
        """
        data = self.get_object_bytes(bucket, key)
        try:
            document = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            log_error("S3", f"Failed to decode JSON object s3://{bucket}/{key}: {e}")
            raise
        return parser(document)

    def fetch_csv_from_s3(
        self,
        bucket: str,
        key: str,
        parser: Callable[[List[List[str]]], Any] = lambda rows: rows,
    ) -> Any:
        """
        Download a CSV object and hand its rows to a parser.

        Rows may have a varying number of fields.
        """
        data = self.get_object_bytes(bucket, key)
        rows = list(csv.reader(io.StringIO(data.decode("utf-8"))))
        return parser(rows)

    def put_file_to_s3(
        self,
        bucket: str,
        key: str,
        data: bytes,
        content_type: str = "application/json",
    ) -> None:
        try:
            self.s3.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            log_error("S3", f"Failed to upload s3://{bucket}/{key}: {e}")
            raise
        log_progress("S3", f"File successfully uploaded to s3://{bucket}/{key}")

    # DynamoDB

    def put_dynamodb_item(self, table: str, item: Dict[str, Dict[str, Any]]) -> None:
        self.dynamodb.put_item(TableName=table, Item=item)

    def describe_provisioned_throughput(self, table: str) -> Tuple[int, int, str]:
        """
        Read a table's provisioned throughput.

        Returns:
            Tuple of (read_units, write_units, table_status)
        """
        description = self.dynamodb.describe_table(TableName=table)["Table"]
        throughput = description.get("ProvisionedThroughput", {})
        return (
            int(throughput.get("ReadCapacityUnits", 0)),
            int(throughput.get("WriteCapacityUnits", 0)),
            description.get("TableStatus", "UNKNOWN"),
        )

    def update_provisioned_throughput(
        self, table: str, read_units: int, write_units: int
    ) -> int:
        """
        Set a table's provisioned throughput.

        Returns:
            The write units reported by DynamoDB after the update
        """
        response = self.dynamodb.update_table(
            TableName=table,
            ProvisionedThroughput={
                "ReadCapacityUnits": read_units,
                "WriteCapacityUnits": write_units,
            },
        )
        throughput = response.get("TableDescription", {}).get("ProvisionedThroughput", {})
        return int(throughput.get("WriteCapacityUnits", write_units))

    def fetch_dynamodb_last_modified(
        self, key_name: str, table: str = LAST_UPDATE_TABLE
    ) -> Optional[str]:
        """
        Fetch the recorded last update time for a source.

        Returns:
            RFC 3339 timestamp string, or None if no update was recorded
        """
        try:
            response = self.dynamodb.get_item(
                TableName=table, Key={"name_id": {"S": key_name}}
            )
        except ClientError as e:
            log_error(
                "DynamoDB",
                f"Failed to fetch value from table {table}, key {key_name}: {e}",
            )
            raise
        item = response.get("Item")
        if not item or "date" not in item:
            return None
        return item["date"]["S"]

    def put_dynamodb_last_modified(
        self, key_name: str, timestamp: str, table: str = LAST_UPDATE_TABLE
    ) -> None:
        self.dynamodb.put_item(
            TableName=table,
            Item={"name_id": {"S": key_name}, "date": {"S": timestamp}},
        )
        log_progress("DynamoDB", f"Recorded last update {timestamp} for {key_name}")

    def with_dynamodb_get_latest(
        self, url: str, key_name: str, timeout: int = 60
    ) -> Optional[requests.Response]:
        """
        Download a source only when it changed since the last recorded update.

        The source's Last-Modified header is compared with the timestamp kept
        in the last update table. When the source is newer, the new timestamp
        is recorded and the GET response is returned.

        Args:
            url: Source URL
            key_name: Key of the source in the last update table
            timeout: Request timeout in seconds

        Returns:
            The GET response, or None when the source is unchanged
        """
        head = requests.head(url, timeout=timeout)
        head.raise_for_status()

        last_modified = head.headers.get("Last-Modified")
        if not last_modified:
            raise ValueError(f"No Last-Modified header returned by {url}")
        source_time = parsedate_to_datetime(last_modified)

        recorded = self.fetch_dynamodb_last_modified(key_name)
        if recorded is not None:
            recorded_time = datetime.fromisoformat(recorded.replace("Z", "+00:00"))
            if source_time <= recorded_time:
                log_progress("DynamoDB", f"Source {key_name} unchanged since {recorded}")
                return None

        self.put_dynamodb_last_modified(key_name, source_time.isoformat())
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return response

    # Kinesis

    def put_kinesis_records(
        self,
        stream: str,
        records: Sequence[Any],
        partition_keys: Sequence[str],
    ) -> Dict[str, Any]:
        """
        JSON-encode records and put them on a Kinesis stream in one request.

        Args:
            stream: Name of the stream to write into
            records: JSON-serialisable records
            partition_keys: One partition key per record

        Returns:
            The PutRecords response
        """
        if len(records) != len(partition_keys):
            raise ValueError(
                f"Got {len(records)} records but {len(partition_keys)} partition keys"
            )

        entries: List[Dict[str, Any]] = [
            {"Data": json.dumps(record).encode("utf-8"), "PartitionKey": partition_key}
            for record, partition_key in zip(records, partition_keys)
        ]

        log_progress("Kinesis", f"Putting {len(entries)} records to stream {stream}")
        response = self.kinesis.put_records(StreamName=stream, Records=entries)
        failed = response.get("FailedRecordCount", 0)
        if failed:
            log_error("Kinesis", f"{failed} of {len(entries)} records were rejected")
        return response

