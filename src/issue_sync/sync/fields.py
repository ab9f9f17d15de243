"""Field kinds, defaults and vocabulary mapping for issue fields.

Every value that reaches the detector passes through ``FieldRules.normalize``
first, so that comparisons happen in one vocabulary:

* **Status** is mapped into the local vocabulary (``open``,
  ``in-progress``, ``blocked``, ``completed``, ``closed``) through a
  per-system table.  Unknown values become lowercase hyphenated slugs.
* **Assignee** values may be plain names or ``{"id": ..., "name": ...}``
  mappings.  Remote snapshots tag account ids with the issuing system;
  ids are compared only within one system, names case-insensitively
  everywhere else.
* **Labels** compare as sets, **progress** as an integer percentage.
* A missing field, or ``None``, counts as the field's default.

``to_remote`` translates resolved values back into a remote's vocabulary
just before apply.  Wire formats stay inside the remote clients.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Iterable, Mapping


class FieldKind(str, Enum):
    ENUM = "enum"
    IDENTITY = "identity"
    TEXT = "text"
    FREE_TEXT = "free_text"
    SET = "set"
    NUMERIC = "numeric"


FIELD_KINDS: dict[str, FieldKind] = {
    "status": FieldKind.ENUM,
    "priority": FieldKind.ENUM,
    "assignee": FieldKind.IDENTITY,
    "title": FieldKind.TEXT,
    "description": FieldKind.FREE_TEXT,
    "comments": FieldKind.FREE_TEXT,
    "labels": FieldKind.SET,
    "progress": FieldKind.NUMERIC,
}

FIELD_DEFAULTS: dict[str, Any] = {
    "status": "open",
    "priority": "",
    "assignee": None,
    "title": "",
    "description": "",
    "comments": "",
    "labels": [],
    "progress": 0,
}

TIMESTAMP_FIELDS = frozenset(
    {"last_synced_at", "created", "updated", "created_at", "updated_at"}
)

# ---------------------------------------------------------------------------
# Status vocabulary
# ---------------------------------------------------------------------------

LOCAL_STATUS_ALIASES: dict[str, str] = {
    "open": "open",
    "todo": "open",
    "new": "open",
    "created": "open",
    "in-progress": "in-progress",
    "in_progress": "in-progress",
    "active": "in-progress",
    "started": "in-progress",
    "working": "in-progress",
    "blocked": "blocked",
    "completed": "completed",
    "complete": "completed",
    "done": "completed",
    "finished": "completed",
    "resolved": "completed",
    "closed": "closed",
    "cancelled": "closed",
    "wont_fix": "closed",
}

DEFAULT_STATUS_MAPS: dict[str, dict[str, str]] = {
    "jira": {
        "To Do": "open",
        "Open": "open",
        "Backlog": "open",
        "Selected for Development": "open",
        "In Progress": "in-progress",
        "In Review": "in-progress",
        "Code Review": "in-progress",
        "Testing": "in-progress",
        "Blocked": "blocked",
        "Done": "completed",
        "Resolved": "completed",
        "Closed": "completed",
        "Complete": "completed",
        "Cancelled": "closed",
        "Won't Do": "closed",
        "Invalid": "closed",
    },
    "github": {
        "open": "open",
        "in-progress": "in-progress",
        "blocked": "blocked",
        "completed": "completed",
        "closed": "completed",
        "not planned": "closed",
    },
}

# Preferred remote spelling for each local status.
DEFAULT_REVERSE_STATUS_MAPS: dict[str, dict[str, str]] = {
    "jira": {
        "open": "To Do",
        "in-progress": "In Progress",
        "blocked": "Blocked",
        "completed": "Done",
        "closed": "Won't Do",
    },
    "github": {
        "open": "open",
        "in-progress": "in-progress",
        "blocked": "blocked",
        "completed": "completed",
        "closed": "not planned",
    },
}

_SLUG_RE = re.compile(r"[\s_]+")


def _slug(value: str) -> str:
    return _SLUG_RE.sub("-", value.strip().lower())


class StatusMapping:
    """Translate statuses between the local vocabulary and each remote's.

    Args:
        overrides: Optional ``{system: {remote_status: local_status}}``
            entries layered over the built-in tables.  The first remote
            status listed for a local status becomes its preferred remote
            spelling.
    """

    def __init__(
        self, overrides: Mapping[str, Mapping[str, str]] | None = None
    ) -> None:
        self._to_local: dict[str, dict[str, str]] = {}
        self._to_remote: dict[str, dict[str, str]] = {}
        for system, table in DEFAULT_STATUS_MAPS.items():
            self._to_local[system] = {k.lower(): v for k, v in table.items()}
        for system, table in DEFAULT_REVERSE_STATUS_MAPS.items():
            self._to_remote[system] = dict(table)
        for system, table in (overrides or {}).items():
            to_local = self._to_local.setdefault(system, {})
            to_remote = self._to_remote.setdefault(system, {})
            claimed: set[str] = set()
            for remote_status, local_status in table.items():
                local_status = self.to_local(None, local_status)
                to_local[remote_status.lower()] = local_status
                if local_status not in claimed:
                    to_remote[local_status] = remote_status
                    claimed.add(local_status)

    def to_local(self, system: str | None, value: Any) -> str:
        """Normalize *value* from *system* (``None`` = local) to local vocabulary."""
        if value is None:
            return FIELD_DEFAULTS["status"]
        text = str(value).strip()
        if not text:
            return FIELD_DEFAULTS["status"]
        if system is not None:
            mapped = self._to_local.get(system, {}).get(text.lower())
            if mapped:
                return mapped
        slug = _slug(text)
        return LOCAL_STATUS_ALIASES.get(slug, LOCAL_STATUS_ALIASES.get(text.lower(), slug))

    def to_remote(self, system: str, value: Any) -> Any:
        """Translate a local status into *system*'s vocabulary."""
        local = self.to_local(None, value)
        return self._to_remote.get(system, {}).get(local, value)


# ---------------------------------------------------------------------------
# Assignee identity
# ---------------------------------------------------------------------------

ASSIGNEE_ID_KEYS = ("id", "account_id")


def assignee_identifiers(value: Any) -> tuple[tuple[str, str] | None, set[str]]:
    """Return ``(scoped_id, names)`` for an assignee value.

    ``scoped_id`` is ``(system, account_id)``; an account id only means
    something inside the system that issued it, named by the ``system``
    key (``""`` when untagged).  Names are lowercased; empty values
    produce ``(None, set())``.
    """
    if value is None:
        return None, set()
    if isinstance(value, Mapping):
        account_id = next((value[k] for k in ASSIGNEE_ID_KEYS if value.get(k)), None)
        names = [
            value.get("name"),
            value.get("display_name"),
            value.get("login"),
            value.get("email"),
        ]
        found: set[str] = {str(n).strip().lower() for n in names if n}
        if not account_id:
            return None, found
        system = str(value.get("system") or "").lower()
        return (system, str(account_id).strip().lower()), found
    text = str(value).strip().lower()
    return None, ({text} if text else set())


def assignees_equal(left: Any, right: Any) -> bool:
    """Compare assignees on account id when both come from the same system.

    Across systems only the login or display name is compared.
    """
    left_id, left_names = assignee_identifiers(left)
    right_id, right_names = assignee_identifiers(right)
    if left_id and right_id and left_id[0] == right_id[0]:
        return left_id[1] == right_id[1]
    left_empty = not left_id and not left_names
    right_empty = not right_id and not right_names
    if left_empty or right_empty:
        return left_empty and right_empty
    return bool(left_names & right_names)


def tag_assignee(value: Any, system: str) -> Any:
    """Mark the account id in *value* as issued by *system*."""
    if not isinstance(value, Mapping) or value.get("system"):
        return value
    if not any(value.get(k) for k in ASSIGNEE_ID_KEYS):
        return value
    return {**value, "system": system}


def assignee_for(system: str, value: Any) -> Any:
    """Drop account ids that *system* did not issue, keeping the names."""
    if not isinstance(value, Mapping) or value.get("system") == system:
        return value
    return {
        k: v for k, v in value.items() if k not in ASSIGNEE_ID_KEYS and k != "system"
    }


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def parse_progress(value: Any) -> int:
    """Parse ``50``, ``"50"``, ``"50%"`` or ``50.4`` into an int percentage."""
    if value is None or value == "":
        return 0
    if isinstance(value, (int, float)):
        return int(round(value))
    text = str(value).strip().rstrip("%").strip()
    try:
        return int(round(float(text)))
    except ValueError:
        raise ValueError(f"Invalid progress value: {value!r}") from None


def normalize_text(value: Any) -> Any:
    """Strip BOM, unify line endings and drop trailing whitespace.

    Non-string values are returned unchanged.
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        return value
    return value.lstrip("\ufeff").replace("\r\n", "\n").rstrip()


def _as_label_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    else:
        items = value
    return sorted({str(item).strip() for item in items if str(item).strip()})


class FieldRules:
    """Per-field normalization, equality and vocabulary translation.

    Args:
        status_mapping: Status tables; defaults to the built-in ones.
        excluded: Extra field names never diffed (remote link fields).
    """

    def __init__(
        self,
        status_mapping: StatusMapping | None = None,
        excluded: Iterable[str] = (),
    ) -> None:
        self.status = status_mapping or StatusMapping()
        self.excluded = TIMESTAMP_FIELDS | frozenset(excluded)

    def with_excluded(self, fields: Iterable[str]) -> FieldRules:
        """Return a copy that also skips *fields*; ``self`` is unchanged."""
        return FieldRules(self.status, self.excluded | frozenset(fields))

    def kind(self, field: str) -> FieldKind:
        return FIELD_KINDS.get(field, FieldKind.TEXT)

    def default(self, field: str) -> Any:
        default = FIELD_DEFAULTS.get(field)
        return list(default) if isinstance(default, list) else default

    def is_diffable(self, field: str) -> bool:
        return field not in self.excluded

    def normalize(
        self, field: str, value: Any, system: str | None = None
    ) -> Any:
        """Return *value* in the local vocabulary, defaults applied."""
        if value is None:
            value = self.default(field)
        if field == "status":
            return self.status.to_local(system, value)
        kind = self.kind(field)
        if kind is FieldKind.SET:
            return _as_label_list(value)
        if kind is FieldKind.NUMERIC:
            return parse_progress(value)
        if kind is FieldKind.IDENTITY:
            if isinstance(value, str) and not value.strip():
                return None
            return value if system is None else tag_assignee(value, system)
        if kind in (FieldKind.TEXT, FieldKind.FREE_TEXT):
            return normalize_text(value)
        return "" if value is None else value

    def equal(self, field: str, left: Any, right: Any) -> bool:
        """Compare two already-normalized values of *field*."""
        kind = self.kind(field)
        if kind is FieldKind.IDENTITY:
            return assignees_equal(left, right)
        if kind is FieldKind.SET:
            return set(_as_label_list(left)) == set(_as_label_list(right))
        if kind is FieldKind.ENUM:
            return str(left or "").strip().lower() == str(right or "").strip().lower()
        return left == right

    def to_remote(self, system: str, updates: Mapping[str, Any]) -> dict[str, Any]:
        """Translate resolved values into *system*'s vocabulary."""
        translated: dict[str, Any] = {}
        for field, value in updates.items():
            if field == "status":
                translated[field] = self.status.to_remote(system, value)
            elif self.kind(field) is FieldKind.IDENTITY:
                translated[field] = assignee_for(system, value)
            else:
                translated[field] = value
        return translated
