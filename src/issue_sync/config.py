"""Runtime configuration for the sync engine.

Reads remote credentials and engine settings from CLI args, environment
variables, .env files, and the YAML config.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    GITHUB_TOKEN: GitHub API token
    GITHUB_REPO: GitHub repository as owner/name
    GITHUB_URL: GitHub API root (optional, default: https://api.github.com)
    JIRA_URL: Jira site URL
    JIRA_EMAIL: Jira account email
    JIRA_API_TOKEN: Jira API token
    ISSUE_SYNC_STRATEGY: Default conflict strategy (optional, default: manual)
    ISSUE_SYNC_RECORDS_DIR: Directory of local issue records
    ISSUE_SYNC_STATE_DIR: Directory for base snapshots, backups and the sync log
    ISSUE_SYNC_FETCH_TIMEOUT: Seconds to wait for remote fetches (optional, default: 30)
    ISSUE_SYNC_MAX_PARALLEL: Max issues synced in parallel (optional, default: 4)
    ISSUE_SYNC_MAX_RETRIES: Retries for transient remote errors (optional, default: 3)
    ISSUE_SYNC_INSECURE: Skip SSL verification (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from .config_schema import UnifiedConfig
from .sync.models import ResolutionStrategy

logger = logging.getLogger(__name__)


@dataclass
class Config:
    github_url: str = "https://api.github.com"
    github_repo: str | None = None
    github_token: str | None = None
    jira_url: str | None = None
    jira_email: str | None = None
    jira_token: str | None = None
    strategy: str = "manual"
    records_dir: str = "issues"
    state_dir: str = ".issue_sync/state"
    fetch_timeout: float = 30.0
    max_parallel_runs: int = 4
    max_retries: int = 3
    insecure: bool = False
    debug: bool = False
    sections: UnifiedConfig = field(default_factory=UnifiedConfig)

    @property
    def github_enabled(self) -> bool:
        return bool(self.github_repo or self.github_token)

    @property
    def jira_enabled(self) -> bool:
        return bool(self.jira_url or self.jira_email or self.jira_token)


def _validate_url(name: str, url: str) -> str:
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid {name} URL '{url}': must start with http:// or https://"
        )
    if not urlparse(url).hostname:
        raise ValueError(f"Invalid {name} URL '{url}': URL must include a hostname")
    return url.removesuffix("/")


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    A remote is enabled as soon as any of its settings is present; an
    enabled remote must then be fully configured.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If a URL is malformed, credentials of an enabled remote
            are missing, or a number is out of range.
    """
    if config.github_enabled:
        config.github_url = _validate_url("GitHub", config.github_url)
        if not (config.github_repo or "").strip():
            raise ValueError(
                "GitHub repository cannot be empty. Set GITHUB_REPO environment variable."
            )
        if config.github_repo.strip().count("/") != 1:
            raise ValueError(
                f"Invalid GitHub repository '{config.github_repo}': expected owner/name"
            )
        if not (config.github_token or "").strip():
            raise ValueError(
                "GitHub token cannot be empty. Set GITHUB_TOKEN environment variable."
            )

    if config.jira_enabled:
        if not (config.jira_url or "").strip():
            raise ValueError(
                "Jira URL cannot be empty. Set JIRA_URL environment variable."
            )
        config.jira_url = _validate_url("Jira", config.jira_url)
        if not (config.jira_email or "").strip():
            raise ValueError(
                "Jira email cannot be empty. Set JIRA_EMAIL environment variable."
            )
        if not (config.jira_token or "").strip():
            raise ValueError(
                "Jira API token cannot be empty. Set JIRA_API_TOKEN environment variable."
            )

    config.strategy = ResolutionStrategy.parse(config.strategy).value

    if not (0 < config.fetch_timeout <= 600):
        raise ValueError(
            f"Invalid fetch timeout '{config.fetch_timeout}': must be between 0 and 600 seconds"
        )
    if not (1 <= config.max_parallel_runs <= 32):
        raise ValueError(
            f"Invalid max parallel runs '{config.max_parallel_runs}': must be a number between 1 and 32"
        )
    if not (0 <= config.max_retries <= 10):
        raise ValueError(
            f"Invalid max retries '{config.max_retries}': must be a number between 0 and 10"
        )

    if not config.github_enabled and not config.jira_enabled:
        logger.warning("No remote configured; sync runs will only touch local records")

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _number_env(key: str, cast, low, high):
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    github_token: str | None = None,
    github_repo: str | None = None,
    jira_url: str | None = None,
    strategy: str | None = None,
    records_dir: str | None = None,
    state_dir: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    unified: UnifiedConfig | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > YAML (``unified``) > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        github_token: Override GitHub token.
        github_repo: Override GitHub repository.
        jira_url: Override Jira site URL.
        strategy: Override the default conflict strategy.
        records_dir: Override the records directory.
        state_dir: Override the state directory.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        unified: Parsed YAML config; zero-config defaults when omitted.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If a value is invalid after checking all sources.
    """
    unified = unified or UnifiedConfig()
    gh, jira, sync = unified.github, unified.jira, unified.sync

    # --- String fields: CLI > env > YAML > default ---

    config = Config(
        github_url=os.getenv("GITHUB_URL") or gh.url,
        github_repo=github_repo or os.getenv("GITHUB_REPO") or gh.repo,
        github_token=github_token or os.getenv("GITHUB_TOKEN") or gh.token,
        jira_url=jira_url or os.getenv("JIRA_URL") or jira.url,
        jira_email=os.getenv("JIRA_EMAIL") or jira.email,
        jira_token=os.getenv("JIRA_API_TOKEN") or jira.api_token,
        strategy=strategy or os.getenv("ISSUE_SYNC_STRATEGY") or sync.strategy,
        records_dir=records_dir
        or os.getenv("ISSUE_SYNC_RECORDS_DIR")
        or sync.records_dir,
        state_dir=state_dir or os.getenv("ISSUE_SYNC_STATE_DIR") or sync.state_dir,
        sections=unified,
    )

    # --- Boolean fields: CLI > env > default ---

    if insecure:
        config.insecure = True
    else:
        config.insecure = bool(get_bool_env("ISSUE_SYNC_INSECURE"))

    if debug:
        config.debug = True
    else:
        config.debug = bool(get_bool_env("ISSUE_SYNC_DEBUG"))

    # --- Numeric fields: env > YAML > default ---

    fetch_timeout = _number_env("ISSUE_SYNC_FETCH_TIMEOUT", float, 1, 600)
    config.fetch_timeout = (
        fetch_timeout if fetch_timeout is not None else sync.fetch_timeout
    )
    max_parallel = _number_env("ISSUE_SYNC_MAX_PARALLEL", int, 1, 32)
    config.max_parallel_runs = (
        max_parallel if max_parallel is not None else sync.max_parallel_runs
    )
    max_retries = _number_env("ISSUE_SYNC_MAX_RETRIES", int, 0, 10)
    config.max_retries = (
        max_retries if max_retries is not None else unified.retry.max_retries
    )

    validate_config(config)

    return config
