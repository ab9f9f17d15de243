"""Field merge rules used by the ``merge`` strategy.

Uses the ``merge3`` library for three-way text merging (the same algorithm
used by Bazaar/Breezy) and ``difflib`` for unified diff generation.

Key design choices:

* Free text first tries a clean line-based three-way merge.  When the two
  sides touch the same lines, both versions are kept: the remote text is
  appended under a delimiter line naming its system, so nothing is lost.
* Label sets are unioned.
* Progress takes the maximum of the two sides.
"""

from __future__ import annotations

import difflib
from typing import Any, Iterable

from merge3 import Merge3

MERGE_DELIMITER = "--- merged from {system} ---"


def attempt_merge(
    base_content: str,
    local_content: str,
    remote_content: str,
) -> tuple[str, bool]:
    """Perform a three-way merge of local and remote changes against a base.

    Args:
        base_content: The common ancestor content.
        local_content: The current local text.
        remote_content: The current remote text.

    Returns:
        A tuple of ``(merged_text, has_conflicts)`` where *merged_text* is
        the result of the merge (possibly containing conflict markers) and
        *has_conflicts* is ``True`` if conflict markers are present.
    """
    base_lines = base_content.splitlines(True)
    local_lines = local_content.splitlines(True)
    remote_lines = remote_content.splitlines(True)

    m3 = Merge3(base_lines, local_lines, remote_lines)

    merged_lines = list(
        m3.merge_lines(
            name_a="LOCAL",
            name_b="REMOTE",
            start_marker="<<<<<<< LOCAL",
            mid_marker="=======",
            end_marker=">>>>>>> REMOTE",
        )
    )

    merged_text = "".join(merged_lines)
    has_conflicts = "<<<<<<< LOCAL" in merged_text

    return merged_text, has_conflicts


def concatenate_text(local_text: str, remote_text: str, system: str) -> str:
    """Keep both texts, the remote one under an authorship delimiter."""
    delimiter = MERGE_DELIMITER.format(system=system)
    local_part = local_text.rstrip()
    remote_part = remote_text.strip()
    if not local_part:
        return f"{delimiter}\n{remote_part}"
    return f"{local_part}\n\n{delimiter}\n{remote_part}"


def merge_free_text(
    base_text: str | None,
    local_text: str | None,
    remote_text: str | None,
    system: str,
) -> tuple[str, bool]:
    """Merge two edited versions of a free-text field.

    Returns:
        ``(merged_text, clean)`` where *clean* is ``True`` when the
        three-way merge succeeded without falling back to concatenation.
    """
    base_text = base_text or ""
    local_text = local_text or ""
    remote_text = remote_text or ""
    if base_text:
        merged, has_conflicts = attempt_merge(base_text, local_text, remote_text)
        if not has_conflicts:
            return merged, True
    return concatenate_text(local_text, remote_text, system), False


def union_labels(local: Iterable[Any] | None, remote: Iterable[Any] | None) -> list[str]:
    """Union two label collections, sorted for stable output."""
    return sorted({str(v) for v in (local or [])} | {str(v) for v in (remote or [])})


def max_progress(local: int | None, remote: int | None) -> int:
    return max(local or 0, remote or 0)


def generate_diff(
    old_content: str,
    new_content: str,
    label_old: str = "old",
    label_new: str = "new",
) -> str:
    """Generate a unified diff between two strings.

    Args:
        old_content: The original content.
        new_content: The modified content.
        label_old: Label for the old side in the diff header.
        label_new: Label for the new side in the diff header.

    Returns:
        A unified diff string.  Empty string if the contents are identical.
    """
    old_lines = old_content.splitlines(True)
    new_lines = new_content.splitlines(True)

    diff_lines = difflib.unified_diff(
        old_lines,
        new_lines,
        fromfile=label_old,
        tofile=label_new,
    )

    return "".join(diff_lines)
