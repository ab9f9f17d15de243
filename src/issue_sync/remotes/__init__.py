"""Remote tracker clients.

Each client implements the ``RemoteClient`` boundary (``fetch`` and
``apply``) and raises classified ``RemoteError`` subclasses.  HTTP plumbing,
retry with backoff and the circuit breaker live in ``base`` and ``retry``.
"""

from .base import HttpRemoteClient, RemoteClient
from .github import GitHubClient
from .jira import JiraClient
from .retry import CircuitBreaker, CircuitState, RetryPolicy, call_with_retry

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "GitHubClient",
    "HttpRemoteClient",
    "JiraClient",
    "RemoteClient",
    "RetryPolicy",
    "call_with_retry",
]
