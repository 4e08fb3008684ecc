"""Remote object store client for S3 Mirror.

The dispatcher only needs one capability: store a byte stream at a key in
a bucket, succeeding or failing with a classified error.  :class:`S3Store`
provides it on top of boto3 and maps botocore failures onto
:class:`TransientStoreError` / :class:`PermanentStoreError`.
"""

from __future__ import annotations

import logging
from typing import Any, BinaryIO, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from s3_mirror.errors import PermanentStoreError, TransientStoreError

logger = logging.getLogger(__name__)

# S3 error codes worth retrying
TRANSIENT_CODES = frozenset({
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestThrottled",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
})

_TRANSIENT_EXCEPTIONS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


class RemoteStore(Protocol):
    def put(self, bucket: str, key: str, body: BinaryIO) -> None:
        """Store *body* at *key* in *bucket* or raise a classified StoreError."""
        ...


def classify_error(exc: Exception) -> TransientStoreError | PermanentStoreError:
    """Translate a boto3/botocore exception into the store error taxonomy."""
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        code = str(err.get("Code", ""))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        message = err.get("Message") or str(exc)
        if code in TRANSIENT_CODES or (status and int(status) >= 500):
            return TransientStoreError(message, code=code or None)
        return PermanentStoreError(message, code=code or None)
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return TransientStoreError(str(exc), code=type(exc).__name__)
    if isinstance(exc, NoCredentialsError):
        return PermanentStoreError(str(exc), code="NoCredentials")
    return PermanentStoreError(str(exc), code=type(exc).__name__)


def build_s3_client(
    region: str = "",
    profile: str = "",
    endpoint_url: str = "",
    connect_timeout: float = 10,
    read_timeout: float = 60,
) -> Any:
    """Create an S3 client with explicit timeouts and botocore retries disabled.

    Retries are owned by the dispatcher so that every attempt is visible
    in the outcome log.
    """
    config = BotoConfig(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"max_attempts": 1, "mode": "standard"},
    )
    kwargs: dict[str, Any] = {"config": config}
    if region:
        kwargs["region_name"] = region
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    if profile:
        session = boto3.Session(profile_name=profile)
        return session.client("s3", **kwargs)
    return boto3.client("s3", **kwargs)


class S3Store:
    """`RemoteStore` backed by a boto3 S3 client."""

    def __init__(self, client: Any):
        self._client = client

    def put(self, bucket: str, key: str, body: BinaryIO) -> None:
        try:
            self._client.put_object(Bucket=bucket, Key=key, Body=body)
        except (BotoCoreError, ClientError) as exc:
            raise classify_error(exc) from exc
        logger.debug("put_object s3://%s/%s ok", bucket, key)
