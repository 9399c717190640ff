"""Translate botocore exceptions into the migration error taxonomy."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from aws2gcp.errors import (
    AuthorizationError,
    MigrationError,
    QuotaExceeded,
    RemoteOperationError,
    ResourceNotFound,
    TransientRemoteError,
)

AUTH_CODES = {
    "AuthFailure",
    "UnauthorizedOperation",
    "AccessDenied",
    "AccessDeniedException",
    "InvalidClientTokenId",
    "ExpiredToken",
    "RequestExpired",
    "SignatureDoesNotMatch",
}

TRANSIENT_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "SlowDown",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "Unavailable",
    "RequestTimeout",
}

NOT_FOUND_CODES = {"NoSuchBucket", "NoSuchKey", "NotFound", "404"}


def classify_client_error(error: ClientError, operation: str) -> MigrationError:
    """Map a botocore ClientError to a MigrationError subclass."""
    code = error.response.get("Error", {}).get("Code", "")
    message = error.response.get("Error", {}).get("Message", str(error))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    text = f"{operation}: {code}: {message}"

    if code in AUTH_CODES:
        return AuthorizationError(text)
    if code in TRANSIENT_CODES or status >= 500:
        return TransientRemoteError(text)
    if code in NOT_FOUND_CODES or code.endswith(".NotFound") or code.endswith(".Malformed"):
        return ResourceNotFound(text)
    if code.endswith("LimitExceeded") or "Quota" in code:
        return QuotaExceeded(text)
    return RemoteOperationError(text)


@contextmanager
def aws_errors(operation: str) -> Iterator[None]:
    """Re-raise botocore errors raised inside the block as MigrationErrors."""
    try:
        yield
    except ClientError as e:
        raise classify_client_error(e, operation) from e
    except (NoCredentialsError, PartialCredentialsError) as e:
        raise AuthorizationError(f"{operation}: {e}") from e
    except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as e:
        raise TransientRemoteError(f"{operation}: {e}") from e
    except BotoCoreError as e:
        raise RemoteOperationError(f"{operation}: {e}") from e
