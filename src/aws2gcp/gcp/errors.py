"""Translate Google API and gcloud failures into the migration error taxonomy."""

from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Iterator

from google.auth.exceptions import GoogleAuthError, TransportError
from googleapiclient.errors import HttpError

from aws2gcp.errors import (
    AuthorizationError,
    MigrationError,
    QuotaExceeded,
    RemoteOperationError,
    ResourceConflict,
    ResourceNotFound,
    TransientRemoteError,
)
from aws2gcp.utils.subprocess import CommandError

QUOTA_REASONS = {"quotaExceeded", "limitExceeded"}
RATE_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def _reasons(error: HttpError) -> set[str]:
    """``errors[].reason`` values from a Google API error body."""
    try:
        data = json.loads(error.content.decode("utf-8"))
    except (AttributeError, ValueError):
        return set()
    body = data.get("error") if isinstance(data, dict) else None
    if not isinstance(body, dict):
        return set()
    return {e.get("reason", "") for e in body.get("errors", []) if isinstance(e, dict)}


def classify_http_error(error: HttpError, operation: str) -> MigrationError:
    """Map an HttpError from googleapiclient to a MigrationError subclass."""
    status = int(error.resp.status)
    detail = str(error)
    reasons = _reasons(error)
    text = f"{operation}: HTTP {status}: {detail}"

    if status == 429 or status >= 500 or reasons & RATE_REASONS:
        return TransientRemoteError(text)
    if reasons & QUOTA_REASONS or "QUOTA_EXCEEDED" in detail:
        return QuotaExceeded(text)
    if status in (401, 403):
        return AuthorizationError(text)
    if status == 404:
        return ResourceNotFound(text)
    if status == 409:
        return ResourceConflict(text)
    return RemoteOperationError(text)


def classify_command_error(error: CommandError, operation: str) -> MigrationError:
    """Classify a failed gcloud invocation from its output."""
    output = error.result.output
    lower = output.lower()
    text = f"{operation}: {output[-500:]}"

    if "permission_denied" in lower or "permission denied" in lower or "unauthenticated" in lower:
        return AuthorizationError(text)
    if "quota" in lower:
        return QuotaExceeded(text)
    if "not found" in lower or "not_found" in lower:
        return ResourceNotFound(text)
    if "unavailable" in lower or "deadline exceeded" in lower or "rate limit" in lower:
        return TransientRemoteError(text)
    return RemoteOperationError(text)


@contextmanager
def gcp_errors(operation: str) -> Iterator[None]:
    """Re-raise Google API and gcloud errors raised inside the block."""
    try:
        yield
    except HttpError as e:
        raise classify_http_error(e, operation) from e
    except TransportError as e:
        raise TransientRemoteError(f"{operation}: {e}") from e
    except GoogleAuthError as e:
        raise AuthorizationError(f"{operation}: {e}") from e
    except CommandError as e:
        raise classify_command_error(e, operation) from e
    except FileNotFoundError as e:
        raise RemoteOperationError(f"{operation}: gcloud CLI not installed ({e})") from e
    except (ConnectionError, TimeoutError) as e:
        raise TransientRemoteError(f"{operation}: {e}") from e
