"""
Unit tests for S3 error translation.

No network access: these tests exercise how botocore errors are mapped onto
the object store error hierarchy.
"""

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ParamValidationError

from toolhub.catalog_sync.config import S3Config
from toolhub.catalog_sync.remote import (
    ObjectStoreError,
    ObjectStoreUnavailableError,
    PreconditionFailedError,
    S3ObjectStore,
)


def client_error(code):
    return ClientError({"Error": {"Code": code, "Message": "test"}}, "PutObject")


class TestS3ErrorTranslation:
    """Tests for S3ObjectStore._translate."""

    @pytest.fixture
    def store(self):
        return S3ObjectStore(S3Config(bucket="test-bucket"))

    @pytest.mark.parametrize("code", ["PreconditionFailed", "412", "ConditionalRequestConflict"])
    def test_precondition_codes(self, store, code):
        error = store._translate("put", "k", client_error(code))
        assert isinstance(error, PreconditionFailedError)

    @pytest.mark.parametrize("code", ["503", "SlowDown", "InternalError"])
    def test_server_errors_are_unavailable(self, store, code):
        error = store._translate("get", "k", client_error(code))
        assert isinstance(error, ObjectStoreUnavailableError)

    def test_access_denied_is_plain_store_error(self, store):
        error = store._translate("get", "k", client_error("AccessDenied"))
        assert type(error) is ObjectStoreError

    def test_transport_error_is_unavailable(self, store):
        error = store._translate("get", "k", EndpointConnectionError(endpoint_url="http://s3"))
        assert isinstance(error, ObjectStoreUnavailableError)

    def test_unsupported_conditional_write_is_not_silent(self, store):
        error = store._translate("put", "k", ParamValidationError(report="Unknown parameter IfMatch"))
        assert type(error) is ObjectStoreError
        assert "conditional" in str(error)

    @pytest.mark.asyncio
    async def test_operations_require_connection(self, store):
        assert not store.is_connected
        with pytest.raises(ObjectStoreUnavailableError):
            await store.get("k")
