"""Exception hierarchy shared by the sync engine and remote clients.

Remote failures are classified at the client boundary into four kinds so
the orchestrator can decide, without inspecting HTTP details, whether to
retry, exclude a remote, or abort the run:

- ``TransientRemoteError`` -- network failure, timeout, rate limit or 5xx.
  Retried by the client; surfaced only once retries are exhausted.
- ``PermanentRemoteError`` -- remote-side validation rejection.  Never
  retried; may name the offending fields.
- ``AuthError`` -- bad or missing credentials.  Aborts the run.
- ``NotFoundError`` -- the linked remote issue no longer exists.  Aborts
  the run and flags the record for re-linking.

``ConflictDeferred`` and ``SyncCancelled`` are control-flow signals raised
by resolution callbacks, not failures.
"""

from __future__ import annotations

from collections.abc import Iterable

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class IssueSyncError(Exception):
    """Base class for all issue-sync errors."""

    kind = "error"


class RemoteError(IssueSyncError):
    """A failed call against a remote issue tracker.

    Attributes:
        system: Name of the remote (``github``, ``jira``).
        fields: Field names the remote rejected, when it says so.
        status_code: HTTP status code, if the failure came from a response.
        retry_after: Seconds the remote asked us to wait, if any.
    """

    kind = "remote"

    def __init__(
        self,
        message: str,
        *,
        system: str | None = None,
        fields: Iterable[str] = (),
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.system = system
        self.fields = tuple(fields)
        self.status_code = status_code
        self.retry_after = retry_after

    def __str__(self) -> str:
        if self.system:
            return f"{self.system}: {self.message}"
        return self.message


class TransientRemoteError(RemoteError):
    kind = "transient"


class PermanentRemoteError(RemoteError):
    kind = "permanent"


class AuthError(RemoteError):
    kind = "auth"


class NotFoundError(RemoteError):
    kind = "notfound"


class RecordNotFoundError(IssueSyncError):
    """The Record Store has no local record for the requested issue id."""

    kind = "local"


class RunInProgressError(IssueSyncError):
    """Another run for the same issue id is still in flight."""

    kind = "busy"

    def __init__(self, issue_id: str) -> None:
        super().__init__(f"A sync run for issue {issue_id} is already in progress")
        self.issue_id = issue_id


class ConflictDeferred(IssueSyncError):
    """Raised by a resolution callback to re-queue a conflict."""

    kind = "deferred"


class SyncCancelled(IssueSyncError):
    """Raised (or signalled) to cancel a run before it starts writing."""

    kind = "cancelled"


def classify_http_error(
    status_code: int,
    message: str,
    *,
    system: str | None = None,
    fields: Iterable[str] = (),
    retry_after: float | None = None,
) -> RemoteError:
    """Map an HTTP status code to the matching ``RemoteError`` subclass.

    Args:
        status_code: HTTP status of the failed response.
        message: Human-readable description of the failure.
        system: Remote system name.
        fields: Fields the remote reported as invalid.
        retry_after: Parsed ``Retry-After`` header value.

    Returns:
        An exception instance (not raised).
    """
    kwargs = {
        "system": system,
        "fields": fields,
        "status_code": status_code,
        "retry_after": retry_after,
    }
    if status_code in (401, 403):
        return AuthError(message, **kwargs)
    if status_code == 404:
        return NotFoundError(message, **kwargs)
    if status_code in TRANSIENT_STATUS_CODES:
        return TransientRemoteError(message, **kwargs)
    return PermanentRemoteError(message, **kwargs)
