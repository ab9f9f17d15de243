"""Jira client (REST API v2, basic auth with an API token).

Status changes go through the workflow: the client looks up the issue's
available transitions and fires the one whose target status matches.  All
other fields are written with a single ``PUT /issue/{key}``.
"""

import logging
from typing import Any, Mapping

import requests

from ..errors import PermanentRemoteError
from ..sync.models import Snapshot, remote_origin
from .base import HttpRemoteClient

logger = logging.getLogger(__name__)

JIRA_API_PATH = "/rest/api/2"
JIRA_SCOPE = frozenset(
    {"title", "description", "status", "assignee", "priority", "labels"}
)

# Local field name -> Jira field id
_JIRA_FIELDS = {
    "title": "summary",
    "description": "description",
    "assignee": "assignee",
    "priority": "priority",
    "labels": "labels",
}


class JiraClient(HttpRemoteClient):
    """Fetch and update Jira issues.

    Args:
        base_url: Site URL, e.g. ``https://example.atlassian.net``.
        email: Account email for basic auth.
        token: API token.
        progress_field: Custom field id holding a percentage, if any.
        account_ids: Display name or login to Jira account id, for
            assignees written from other systems.
    """

    name = "jira"

    def __init__(
        self,
        base_url: str,
        email: str,
        token: str,
        progress_field: str | None = None,
        account_ids: Mapping[str, str] | None = None,
        **kwargs,
    ):
        super().__init__(base_url, **kwargs)
        self.email = email
        self.token = token
        self.progress_field = progress_field
        self.account_ids = {k.lower(): v for k, v in (account_ids or {}).items()}
        self.scope = (
            JIRA_SCOPE | {"progress"} if progress_field else JIRA_SCOPE
        )
        self._field_ids = dict(_JIRA_FIELDS)
        if progress_field:
            self._field_ids["progress"] = progress_field

    def _create_session(self) -> requests.Session:
        session = super()._create_session()
        session.auth = (self.email, self.token)
        session.headers["Content-Type"] = "application/json"
        return session

    def _issue_path(self, remote_key: str) -> str:
        return f"{JIRA_API_PATH}/issue/{str(remote_key).strip()}"

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------

    def fetch(self, remote_key: str) -> Snapshot:
        wanted = ["summary", "description", "status", "assignee", "priority", "labels"]
        if self.progress_field:
            wanted.append(self.progress_field)
        data = self._request(
            "GET", self._issue_path(remote_key), params={"fields": ",".join(wanted)}
        )
        return Snapshot(
            origin=remote_origin(self.name),
            fields=self.to_fields(data or {}),
            scope=self.scope,
        )

    def apply(self, remote_key: str, updates: Mapping[str, Any]) -> None:
        """Write field updates, then transition the status if asked to.

        Raises:
            PermanentRemoteError: With ``fields=["status"]`` when no
                transition leads to the requested status.
        """
        fields = self.to_payload(updates)
        if fields:
            self._request("PUT", self._issue_path(remote_key), json={"fields": fields})
        if "status" in updates:
            self.transition(remote_key, updates["status"])

    def transition(self, remote_key: str, status: str) -> None:
        path = f"{self._issue_path(remote_key)}/transitions"
        data = self._request("GET", path) or {}
        wanted = str(status).strip().lower()
        for transition in data.get("transitions", []):
            target = (transition.get("to") or {}).get("name", "")
            if wanted in (target.lower(), str(transition.get("name", "")).lower()):
                self._request(
                    "POST", path, json={"transition": {"id": transition["id"]}}
                )
                logger.debug(
                    "Transitioned %s to %s via transition %s",
                    remote_key,
                    target,
                    transition["id"],
                )
                return
        raise PermanentRemoteError(
            f"No transition to status {status!r} for {remote_key}",
            system=self.name,
            fields=["status"],
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_fields(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Map a Jira issue payload to sync fields."""
        raw = data.get("fields") or {}
        status = raw.get("status") or {}
        priority = raw.get("priority") or {}
        assignee = raw.get("assignee")
        fields = {
            "title": raw.get("summary") or "",
            "description": raw.get("description") or "",
            "status": status.get("name", ""),
            "priority": priority.get("name", ""),
            "labels": list(raw.get("labels") or []),
            "assignee": (
                {
                    "id": assignee.get("accountId"),
                    "name": assignee.get("displayName"),
                }
                if assignee
                else None
            ),
        }
        if self.progress_field:
            fields["progress"] = raw.get(self.progress_field)
        return fields

    def to_payload(self, updates: Mapping[str, Any]) -> dict[str, Any]:
        """Build the ``fields`` object of an issue update; status is excluded."""
        payload: dict[str, Any] = {}
        for name, value in updates.items():
            jira_field = self._field_ids.get(name)
            if jira_field is None:
                continue
            match name:
                case "assignee":
                    account_id = self._account_id(value)
                    payload[jira_field] = (
                        {"accountId": account_id} if account_id else None
                    )
                case "priority":
                    payload[jira_field] = {"name": value} if value else None
                case "labels":
                    payload[jira_field] = list(value or [])
                case _:
                    payload[jira_field] = value
        return payload

    def _account_id(self, value: Any) -> str | None:
        if not value:
            return None
        if isinstance(value, Mapping):
            if value.get("id") and value.get("system", "jira") == "jira":
                return str(value["id"])
            value = value.get("name") or value.get("login")
            if not value:
                return None
        text = str(value).strip()
        return self.account_ids.get(text.lower(), text)

    def _rejected_fields(self, response: requests.Response) -> list[str]:
        try:
            errors = response.json().get("errors") or {}
        except (ValueError, AttributeError):
            return []
        by_jira_id = {v: k for k, v in self._field_ids.items()}
        return [by_jira_id.get(key, key) for key in errors]
