"""Lifespan management for MCP server startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from ..config import load_config
from ..config_loader import discover_config_files, load_unified_config
from ..core.async_utils import init_semaphore
from ..sync.factory import build_engine

logger = logging.getLogger(__name__)

_CREDENTIAL_HINT = (
    "Set GITHUB_TOKEN and GITHUB_REPO and/or JIRA_URL, JIRA_EMAIL and JIRA_API_TOKEN."
)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load and validate the YAML config if present
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Build the SyncEngine and its remote clients
    - Fail fast on invalid configuration

    Remotes are not contacted at startup; a sync run reports an
    unreachable remote in its result.

    Args:
        config_overrides: Optional dict with config values from CLI
            (strategy, records_dir, state_dir, insecure, debug)

    Yields:
        Dict with 'engine' key containing the initialized SyncEngine

    Raises:
        RuntimeError: If configuration is invalid.
    """
    logger.info("MCP server starting...")
    _stderr_print("Issue Sync MCP Server starting...")

    overrides = config_overrides or {}
    try:
        # .env first so ${VAR} interpolation in YAML can use its values
        load_dotenv()

        sources = []
        config_files = discover_config_files()
        unified = load_unified_config()
        if config_files:
            sources.append(f"config file: {config_files[0]}")

        config = load_config(
            strategy=overrides.get("strategy"),
            records_dir=overrides.get("records_dir"),
            state_dir=overrides.get("state_dir"),
            insecure=overrides.get("insecure", False),
            debug=overrides.get("debug", False),
            unified=unified,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print(f"  {_CREDENTIAL_HINT}")
        raise RuntimeError(f"Configuration error: {e}. {_CREDENTIAL_HINT}") from e

    engine = build_engine(config)
    if not engine.remotes:
        logger.warning("No remote configured; runs will only touch local records")
        _stderr_print(f"  WARNING: no remote configured. {_CREDENTIAL_HINT}")
    else:
        _stderr_print(f"  Remotes: {', '.join(engine.remotes)}")
    _stderr_print(f"  Records: {config.records_dir}  State: {config.state_dir}")
    _stderr_print(f"  Default strategy: {config.strategy}")

    init_semaphore(config.max_parallel_runs)
    _stderr_print(f"  Parallel runs: {config.max_parallel_runs}")
    _stderr_print("Server ready. Waiting for MCP client connection...")

    yield {"engine": engine, "config": config}

    logger.info("MCP server shutting down")
    _stderr_print("Issue Sync MCP Server shutting down.")
