"""
Test the boto3-backed store and its error classification
"""
import io

import pytest
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ParamValidationError,
    ReadTimeoutError,
)

from s3_mirror import store as store_module
from s3_mirror.errors import PermanentStoreError, TransientStoreError
from s3_mirror.store import S3Store, build_s3_client, classify_error


def _client_error(code, status=400):
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "PutObject",
    )


class FakeS3Client:
    def __init__(self, error=None):
        self.error = error
        self.puts = []

    def put_object(self, Bucket, Key, Body):
        if self.error is not None:
            raise self.error
        self.puts.append((Bucket, Key, Body.read()))
        return {"ETag": '"abc"'}


class TestClassification:

    @pytest.mark.parametrize("code", ["SlowDown", "Throttling", "RequestTimeout", "InternalError"])
    def test_throttling_and_server_codes_are_transient(self, code):
        err = classify_error(_client_error(code, status=503))
        assert isinstance(err, TransientStoreError)
        assert err.code == code

    def test_5xx_without_known_code_is_transient(self):
        assert isinstance(classify_error(_client_error("Weird", 502)), TransientStoreError)

    @pytest.mark.parametrize("code", ["AccessDenied", "NoSuchBucket", "InvalidBucketName"])
    def test_auth_and_validation_codes_are_permanent(self, code):
        err = classify_error(_client_error(code, status=403))
        assert isinstance(err, PermanentStoreError)
        assert str(err) == f"{code} happened"

    def test_network_errors_are_transient(self):
        assert isinstance(
            classify_error(EndpointConnectionError(endpoint_url="https://s3")),
            TransientStoreError,
        )
        assert isinstance(
            classify_error(ConnectTimeoutError(endpoint_url="https://s3")),
            TransientStoreError,
        )
        assert isinstance(
            classify_error(ReadTimeoutError(endpoint_url="https://s3")),
            TransientStoreError,
        )

    def test_missing_credentials_are_permanent(self):
        err = classify_error(NoCredentialsError())
        assert isinstance(err, PermanentStoreError)
        assert err.code == "NoCredentials"

    def test_param_validation_is_permanent(self):
        err = classify_error(ParamValidationError(report="Key too long"))
        assert isinstance(err, PermanentStoreError)


class TestS3Store:

    def test_put_streams_body(self):
        client = FakeS3Client()
        S3Store(client).put("bucket", "prefix/a.txt", io.BytesIO(b"payload"))
        assert client.puts == [("bucket", "prefix/a.txt", b"payload")]

    def test_put_raises_classified_error(self):
        client = FakeS3Client(error=_client_error("SlowDown", 503))
        with pytest.raises(TransientStoreError) as info:
            S3Store(client).put("bucket", "k", io.BytesIO(b""))
        assert isinstance(info.value.__cause__, ClientError)

    def test_put_permanent_error(self):
        client = FakeS3Client(error=_client_error("AccessDenied", 403))
        with pytest.raises(PermanentStoreError):
            S3Store(client).put("bucket", "k", io.BytesIO(b""))


class TestClientFactory:

    def test_client_has_timeouts_and_no_botocore_retries(self, monkeypatch):
        captured = {}

        def fake_client(service, **kwargs):
            captured["service"] = service
            captured.update(kwargs)
            return object()

        monkeypatch.setattr(store_module.boto3, "client", fake_client)
        build_s3_client(region="eu-west-1", endpoint_url="http://minio:9000",
                        connect_timeout=3, read_timeout=7)

        assert captured["service"] == "s3"
        assert captured["region_name"] == "eu-west-1"
        assert captured["endpoint_url"] == "http://minio:9000"
        config = captured["config"]
        assert config.connect_timeout == 3
        assert config.read_timeout == 7
        assert config.retries["max_attempts"] == 1

    def test_defaults_leave_region_to_boto3(self, monkeypatch):
        captured = {}
        monkeypatch.setattr(
            store_module.boto3, "client", lambda service, **kw: captured.update(kw)
        )
        build_s3_client()
        assert "region_name" not in captured
        assert "endpoint_url" not in captured
