"""
Daily short-position ingestion into DynamoDB.

Fetches the day's short-position batch from S3, raises the target table's
provisioned write capacity, drains the batch through a throttled concurrent
writer and restores the capacity afterwards.
"""
