"""YAML config discovery and loading for issue_sync.

Config files are looked up by convention, may pull in other files with
``!include`` and may reference the environment with ``${VAR}`` or
``${VAR:-default}``.  When several files exist they are merged per
top-level section, the project file winning over the global one.

Usage:
    from issue_sync.config_loader import load_unified_config

    unified = load_unified_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config_schema import UnifiedConfig, build_config

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "ISSUE_SYNC_CONFIG"
PROJECT_CONFIG_DIR = ".issue_sync"

# ---------------------------------------------------------------------------
# Env var interpolation
# ---------------------------------------------------------------------------

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Substitute ``${VAR}`` and ``${VAR:-default}`` in *value*.

    An unset or empty variable yields its default, or ``""`` without one.
    An unterminated ``${`` is left as is.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        return match.group(2) if match.group(2) is not None else ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate(obj: Any) -> Any:
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader with an ``!include`` tag.

    A subclass keeps the tag off the global ``yaml.SafeLoader``.  Each
    instance carries the chain of files being loaded so circular includes
    are reported instead of recursing forever.
    """

    include_stack: list[Path]


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    target = Path(loader.construct_scalar(node))
    if not target.is_absolute():
        target = Path(loader.name).resolve().parent / target
    target = target.resolve()

    stack = getattr(loader, "include_stack", [])
    if target in stack:
        chain = " -> ".join(str(p) for p in [*stack, target])
        raise ValueError(f"Circular include detected: {chain}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} "
            f"(referenced from {Path(loader.name).resolve()})"
        )
    return load_yaml(target, _stack=[*stack, target])


ConfigLoader.add_constructor("!include", _include_constructor)


def load_yaml(path: Path, *, _stack: list[Path] | None = None) -> Any:
    """Parse one YAML file with ``!include`` support."""
    path = Path(path).resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_stack = _stack or [path]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery and bootstrapping
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config files, highest precedence first.

    Candidates:
        1. the path in ``ISSUE_SYNC_CONFIG``
        2. ``.issue_sync/config.yml`` in the working directory
        3. ``.issue_sync/config.yaml`` in the working directory
        4. ``~/.config/issue_sync/config.yml``
    """
    candidates: list[Path] = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    project_dir = Path.cwd() / PROJECT_CONFIG_DIR
    candidates.append(project_dir / "config.yml")
    candidates.append(project_dir / "config.yaml")
    candidates.append(Path.home() / ".config" / "issue_sync" / "config.yml")

    return [p for p in candidates if p.exists()]


_STARTER_CONFIG = """\
# issue-sync configuration
#
# Remote credentials can also be set via environment variables:
#   GITHUB_TOKEN, GITHUB_REPO, JIRA_URL, JIRA_EMAIL, JIRA_API_TOKEN
#
# github:
#   repo: your-org/your-repo
#   token: ${GITHUB_TOKEN}
#   link_field: github
#   status_labels:
#     in-progress: in-progress
#     blocked: blocked
#
# jira:
#   url: https://your-site.atlassian.net
#   email: you@example.com
#   api_token: ${JIRA_API_TOKEN}
#   link_field: jira
#   progress_field: customfield_10010
#   account_ids:
#     alice: 5b10a2844c20165700ede21g
#   status_map:
#     QA: in-progress
#
# sync:
#   strategy: manual        # local_wins | remote_wins | merge | manual | interactive
#   records_dir: issues
#   state_dir: .issue_sync/state
#   remote_order: [github, jira]
#   remote_precedence: []   # defaults to remote_order
#   fetch_timeout: 30
#   lock_mode: block        # block | reject
#   max_parallel_runs: 4
#   keep_backups: 10
#
# retry:
#   max_retries: 3
#   base_delay: 1.0
#   max_delay: 30.0
#   failure_threshold: 5
#   reset_timeout: 300
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a commented starter if none exists.

    Args:
        target: Where to create the starter; defaults to
            ``.issue_sync/config.yml`` in the working directory.
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or Path.cwd() / PROJECT_CONFIG_DIR / "config.yml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge every discovered config file.

    Files are applied lowest precedence first; a later file's top-level
    sections replace earlier ones whole.  Env vars are interpolated after
    the merge.  No files means ``{}``.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = load_yaml(path)
        except (OSError, ValueError, yaml.YAMLError):
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has a %s at its root, expected a mapping; skipping",
                path,
                type(data).__name__,
            )

    return _interpolate(merged)


def load_unified_config() -> UnifiedConfig:
    """Discover, merge and validate the YAML config.

    Raises:
        ValueError: If a section fails validation.
    """
    raw = load_hierarchical_config()
    try:
        return build_config(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid issue-sync configuration: {exc}") from exc
