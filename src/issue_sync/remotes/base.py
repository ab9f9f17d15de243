import logging
import threading
import time
from typing import Any, Callable, Mapping, Protocol

import requests

from ..errors import (
    PermanentRemoteError,
    RemoteError,
    TransientRemoteError,
    classify_http_error,
)
from ..sync.models import Snapshot
from .retry import CircuitBreaker, RetryPolicy, call_with_retry, get_retry_after

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = (10, 60)


class RemoteClient(Protocol):
    """Boundary the sync engine uses to talk to one remote tracker.

    ``fetch`` returns a ``remote:<name>`` snapshot in the remote's own
    vocabulary, with ``scope`` set to the fields the remote supports.
    ``apply`` writes already-translated values.  Both raise the classified
    ``RemoteError`` subclasses from ``issue_sync.errors``.
    """

    name: str

    def fetch(self, remote_key: str) -> Snapshot:
        ...  # pragma: no cover

    def apply(self, remote_key: str, updates: Mapping[str, Any]) -> None:
        ...  # pragma: no cover


class HttpRemoteClient:
    """Shared HTTP plumbing for the requests-based remote clients.

    Each thread gets its own ``requests.Session``.  Every request goes
    through ``call_with_retry`` so transient failures are retried with
    backoff and counted by the client's circuit breaker.
    """

    name = "remote"
    scope: frozenset[str] | None = None

    def __init__(
        self,
        base_url: str,
        *,
        timeout: tuple[float, float] = DEFAULT_TIMEOUT,
        verify: bool = True,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify = verify
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep
        self._thread_local = threading.local()

    @property
    def session(self) -> requests.Session:
        """The current thread's session."""
        return self._get_session()

    @property
    def call_timeout(self) -> float:
        """Worst-case seconds one request may take, retries excluded."""
        return float(sum(self.timeout))

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = self.verify
        session.headers["Accept"] = "application/json"
        return session

    def _request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request with retry; return the decoded JSON body or None."""
        return call_with_retry(
            lambda: self._send(method, path, **kwargs),
            policy=self.retry,
            system=self.name,
            description=f"{method} {path}",
            breaker=self.breaker,
            sleep=self._sleep,
        )

    def _send(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._get_session().request(
                method, url, timeout=self.timeout, **kwargs
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientRemoteError(
                f"{method} {path}: {exc}", system=self.name
            ) from exc
        except requests.RequestException as exc:
            raise PermanentRemoteError(
                f"{method} {path}: {exc}", system=self.name
            ) from exc

        if not response.ok:
            raise self._error_from_response(response, method, path)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def _error_from_response(
        self, response: requests.Response, method: str, path: str
    ) -> RemoteError:
        detail = _response_detail(response)
        message = f"{method} {path} returned HTTP {response.status_code}"
        if detail:
            message = f"{message}: {detail}"
        return classify_http_error(
            response.status_code,
            message,
            system=self.name,
            fields=self._rejected_fields(response),
            retry_after=get_retry_after(response),
        )

    def _rejected_fields(self, response: requests.Response) -> list[str]:
        """Local field names the remote says it rejected."""
        return []


def _response_detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200].strip()
    if isinstance(body, dict):
        for key in ("message", "errorMessages", "error"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else "; ".join(map(str, value))
        errors = body.get("errors")
        if errors:
            return str(errors)
    return ""
