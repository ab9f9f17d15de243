"""GitHub Issues client (REST v3).

GitHub has no workflow status of its own, so the client derives one:

- closed issues report ``completed`` or ``not planned`` from
  ``state_reason``;
- open issues report ``blocked`` or ``in-progress`` when the matching
  status label is present, else ``open``.

Status labels and ``priority:<value>`` labels are stripped from
``labels`` and surfaced as ``status`` and ``priority`` instead.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping

import requests

from ..errors import PermanentRemoteError, RemoteError, TransientRemoteError
from ..sync.models import Snapshot, remote_origin
from .base import HttpRemoteClient

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_SCOPE = frozenset(
    {"title", "description", "status", "assignee", "labels", "priority"}
)
DEFAULT_STATUS_LABELS = {"in-progress": "in-progress", "blocked": "blocked"}
PRIORITY_PREFIX = "priority:"

_CLOSED_STATES = {"completed": "completed", "not planned": "not_planned"}
_ISSUE_REF_RE = re.compile(r"(?:^#?|/issues/)(\d+)/?$")
_FIELD_NAMES = {"body": "description", "assignees": "assignee"}


def parse_issue_number(remote_key: Any) -> int:
    """Accept ``42``, ``"#42"`` or an issue URL ending in ``/issues/42``."""
    match = _ISSUE_REF_RE.search(str(remote_key).strip())
    if not match:
        raise PermanentRemoteError(
            f"Invalid GitHub issue reference: {remote_key!r}", system="github"
        )
    return int(match.group(1))


class GitHubClient(HttpRemoteClient):
    """Fetch and update one repository's issues.

    Args:
        repo: ``owner/name``.
        token: Personal access or app token.
        base_url: API root; override for GitHub Enterprise.
        status_labels: Local status to label name for statuses GitHub
            expresses as labels on open issues.
    """

    name = "github"
    scope = GITHUB_SCOPE

    def __init__(
        self,
        repo: str,
        token: str,
        base_url: str = GITHUB_API_URL,
        status_labels: Mapping[str, str] | None = None,
        **kwargs,
    ):
        super().__init__(base_url, **kwargs)
        self.repo = repo.strip("/")
        self.token = token
        self.status_labels = dict(status_labels or DEFAULT_STATUS_LABELS)

    def _create_session(self) -> requests.Session:
        session = super()._create_session()
        session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self.token}",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )
        return session

    def _issue_path(self, remote_key: Any) -> str:
        return f"/repos/{self.repo}/issues/{parse_issue_number(remote_key)}"

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    def fetch(self, remote_key: str) -> Snapshot:
        data = self._request("GET", self._issue_path(remote_key))
        return Snapshot(
            origin=remote_origin(self.name),
            fields=self.to_fields(data or {}),
            scope=self.scope,
        )

    def apply(self, remote_key: str, updates: Mapping[str, Any]) -> None:
        if not updates:
            return
        path = self._issue_path(remote_key)
        current = None
        if {"labels", "status", "priority"} & set(updates):
            current = self.to_fields(self._request("GET", path) or {})
        payload = self.to_payload(updates, current)
        self._request("PATCH", path, json=payload)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_fields(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Map a GitHub issue payload to sync fields."""
        labels = [
            label["name"] if isinstance(label, Mapping) else str(label)
            for label in data.get("labels") or []
        ]
        label_set = {label.lower() for label in labels}
        status_label_names = {v.lower(): k for k, v in self.status_labels.items()}

        if data.get("state") == "closed":
            status = (
                "not planned"
                if data.get("state_reason") == "not_planned"
                else "completed"
            )
        else:
            status = "open"
            for label_name, local_status in status_label_names.items():
                if label_name in label_set:
                    status = local_status
                    break

        priority = ""
        plain_labels = []
        for label in labels:
            if label.lower().startswith(PRIORITY_PREFIX):
                priority = priority or label[len(PRIORITY_PREFIX) :].strip()
            elif label.lower() not in status_label_names:
                plain_labels.append(label)

        assignee = data.get("assignee")
        return {
            "title": data.get("title") or "",
            "description": data.get("body") or "",
            "status": status,
            "priority": priority,
            "labels": plain_labels,
            "assignee": (
                {"id": str(assignee["id"]), "name": assignee.get("login")}
                if assignee
                else None
            ),
        }

    def to_payload(
        self, updates: Mapping[str, Any], current: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Build the PATCH body for *updates*.

        Labels are rewritten as a whole, so status and priority labels are
        recombined with the plain labels from *current*.

        Raises:
            PermanentRemoteError: For a status GitHub cannot represent.
        """
        current = current or {}
        payload: dict[str, Any] = {}
        if "title" in updates:
            payload["title"] = updates["title"] or ""
        if "description" in updates:
            payload["body"] = updates["description"] or ""
        if "assignee" in updates:
            login = _assignee_login(updates["assignee"])
            payload["assignees"] = [login] if login else []

        if not {"labels", "status", "priority"} & set(updates):
            return payload

        status = updates.get("status", current.get("status", "open"))
        priority = updates.get("priority", current.get("priority", ""))
        labels = list(updates.get("labels", current.get("labels", [])) or [])

        if status in _CLOSED_STATES:
            payload["state"] = "closed"
            payload["state_reason"] = _CLOSED_STATES[status]
        elif status in ("open", *self.status_labels):
            payload["state"] = "open"
            if status in self.status_labels:
                labels.append(self.status_labels[status])
        else:
            raise PermanentRemoteError(
                f"GitHub cannot represent status {status!r}",
                system=self.name,
                fields=["status"],
            )
        if priority:
            labels.append(f"{PRIORITY_PREFIX}{priority}")
        payload["labels"] = labels
        return payload

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def _error_from_response(
        self, response: requests.Response, method: str, path: str
    ) -> RemoteError:
        # Secondary rate limits come back as 403 with no remaining quota.
        if (
            response.status_code == 403
            and response.headers.get("X-RateLimit-Remaining") == "0"
        ):
            reset = response.headers.get("X-RateLimit-Reset")
            retry_after = None
            if reset and reset.isdigit():
                now = datetime.now(timezone.utc).timestamp()
                retry_after = max(int(reset) - now, 0.0)
            logger.warning("GitHub rate limit exhausted on %s %s", method, path)
            return TransientRemoteError(
                f"{method} {path} rate limited",
                system=self.name,
                status_code=403,
                retry_after=retry_after,
            )
        return super()._error_from_response(response, method, path)

    def _rejected_fields(self, response: requests.Response) -> list[str]:
        if response.status_code != 422:
            return []
        try:
            errors = response.json().get("errors") or []
        except (ValueError, AttributeError):
            return []
        names = []
        for error in errors:
            if isinstance(error, Mapping) and error.get("field"):
                name = _FIELD_NAMES.get(error["field"], error["field"])
                if name not in names:
                    names.append(name)
        return names


def _assignee_login(value: Any) -> str | None:
    if not value:
        return None
    if isinstance(value, Mapping):
        return value.get("login") or value.get("name")
    return str(value).strip() or None

