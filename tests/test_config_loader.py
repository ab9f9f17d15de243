"""Tests for issue_sync.config_loader -- YAML discovery, includes and merge."""

import textwrap

import pytest
import yaml

from issue_sync.config_loader import (
    _interpolate,
    discover_config_files,
    ensure_config,
    interpolate_env_vars,
    load_hierarchical_config,
    load_unified_config,
    load_yaml,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Empty working directory and home, no ISSUE_SYNC_CONFIG."""
    monkeypatch.delenv("ISSUE_SYNC_CONFIG", raising=False)
    work = tmp_path / "work"
    home = tmp_path / "home"
    work.mkdir()
    home.mkdir()
    monkeypatch.chdir(work)
    monkeypatch.setenv("HOME", str(home))
    return work, home


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


# -------------------------------------------------------------------------
# Env var interpolation
# -------------------------------------------------------------------------


class TestInterpolateEnvVars:
    def test_replaces_set_var(self, monkeypatch):
        monkeypatch.setenv("GH_REPO_X", "acme/widgets")
        assert interpolate_env_vars("${GH_REPO_X}") == "acme/widgets"

    def test_unset_var_replaced_with_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert interpolate_env_vars("token=${UNSET_VAR_XYZ}") == "token="

    def test_default_used_when_unset_or_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        monkeypatch.setenv("EMPTY_VAR_XYZ", "")
        assert interpolate_env_vars("${UNSET_VAR_XYZ:-issues}") == "issues"
        assert interpolate_env_vars("${EMPTY_VAR_XYZ:-issues}") == "issues"

    def test_default_ignored_when_set(self, monkeypatch):
        monkeypatch.setenv("SYNC_DIR_X", "records")
        assert interpolate_env_vars("${SYNC_DIR_X:-issues}") == "records"

    def test_unterminated_left_alone(self):
        assert interpolate_env_vars("${NO_CLOSE") == "${NO_CLOSE"

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("JIRA_SITE_X", "https://acme.atlassian.net")
        data = {"jira": {"url": "${JIRA_SITE_X}", "labels": ["${JIRA_SITE_X}", 3]}}
        assert _interpolate(data) == {
            "jira": {
                "url": "https://acme.atlassian.net",
                "labels": ["https://acme.atlassian.net", 3],
            }
        }


# -------------------------------------------------------------------------
# !include
# -------------------------------------------------------------------------


class TestInclude:
    def test_relative_include(self, tmp_path):
        _write(tmp_path / "secrets.yml", "token: ghp_123\n")
        main = _write(tmp_path / "config.yml", "github: !include secrets.yml\n")
        assert load_yaml(main) == {"github": {"token": "ghp_123"}}

    def test_absolute_include(self, tmp_path):
        secrets = _write(tmp_path / "nested" / "jira.yml", "email: a@b.c\n")
        main = _write(tmp_path / "config.yml", f"jira: !include {secrets}\n")
        assert load_yaml(main) == {"jira": {"email": "a@b.c"}}

    def test_nested_includes(self, tmp_path):
        _write(tmp_path / "c.yml", "lock_mode: reject\n")
        _write(tmp_path / "b.yml", "sync: !include c.yml\n")
        main = _write(tmp_path / "a.yml", "outer: !include b.yml\n")
        assert load_yaml(main) == {"outer": {"sync": {"lock_mode": "reject"}}}

    def test_missing_include(self, tmp_path):
        main = _write(tmp_path / "config.yml", "github: !include missing.yml\n")
        with pytest.raises(FileNotFoundError, match="missing.yml"):
            load_yaml(main)

    @pytest.mark.parametrize(
        "files",
        [
            {"a.yml": "x: !include a.yml\n"},
            {"a.yml": "x: !include b.yml\n", "b.yml": "y: !include a.yml\n"},
        ],
    )
    def test_circular_include(self, tmp_path, files):
        for name, text in files.items():
            _write(tmp_path / name, text)
        with pytest.raises(ValueError, match="Circular include"):
            load_yaml(tmp_path / "a.yml")

    def test_global_safe_loader_not_polluted(self, tmp_path):
        cfg = _write(tmp_path / "config.yml", "x: !include other.yml\n")
        with pytest.raises(yaml.constructor.ConstructorError):
            yaml.safe_load(cfg.read_text())


# -------------------------------------------------------------------------
# Discovery
# -------------------------------------------------------------------------


class TestDiscoverConfigFiles:
    def test_nothing_found(self, isolated):
        assert discover_config_files() == []

    def test_precedence(self, isolated, tmp_path, monkeypatch):
        work, home = isolated
        custom = _write(tmp_path / "custom.yml", "sync: {}\n")
        project = _write(work / ".issue_sync" / "config.yml", "sync: {}\n")
        project_yaml = _write(work / ".issue_sync" / "config.yaml", "sync: {}\n")
        global_cfg = _write(home / ".config" / "issue_sync" / "config.yml", "sync: {}\n")
        monkeypatch.setenv("ISSUE_SYNC_CONFIG", str(custom))

        result = [p.resolve() for p in discover_config_files()]
        assert result == [
            custom.resolve(),
            project.resolve(),
            project_yaml.resolve(),
            global_cfg.resolve(),
        ]

    def test_env_path_must_exist(self, isolated, tmp_path, monkeypatch):
        monkeypatch.setenv("ISSUE_SYNC_CONFIG", str(tmp_path / "nope.yml"))
        assert discover_config_files() == []


# -------------------------------------------------------------------------
# Merge and validation
# -------------------------------------------------------------------------


class TestLoadHierarchicalConfig:
    def test_zero_config(self, isolated):
        assert load_hierarchical_config() == {}

    def test_project_replaces_global_sections(self, isolated):
        work, home = isolated
        _write(
            home / ".config" / "issue_sync" / "config.yml",
            """\
            github:
              repo: acme/global
            sync:
              strategy: merge
            """,
        )
        _write(
            work / ".issue_sync" / "config.yml",
            """\
            sync:
              lock_mode: reject
            """,
        )
        result = load_hierarchical_config()
        assert result["github"] == {"repo": "acme/global"}
        assert result["sync"] == {"lock_mode": "reject"}

    def test_interpolation_after_merge(self, isolated, monkeypatch):
        work, _ = isolated
        monkeypatch.setenv("GH_TOKEN_FOR_TEST", "ghp_env")
        _write(
            work / ".issue_sync" / "config.yml",
            """\
            github:
              token: ${GH_TOKEN_FOR_TEST}
            """,
        )
        assert load_hierarchical_config()["github"]["token"] == "ghp_env"

    def test_non_mapping_root_skipped(self, isolated, caplog):
        work, _ = isolated
        _write(work / ".issue_sync" / "config.yml", "- just\n- a list\n")
        assert load_hierarchical_config() == {}
        assert "expected a mapping" in caplog.text

    def test_broken_yaml_raises(self, isolated):
        work, _ = isolated
        _write(work / ".issue_sync" / "config.yml", "sync: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_hierarchical_config()


class TestLoadUnifiedConfig:
    def test_defaults(self, isolated):
        unified = load_unified_config()
        assert unified.sync.strategy == "manual"
        assert unified.github.link_field == "github"

    def test_values_validated(self, isolated):
        work, _ = isolated
        _write(
            work / ".issue_sync" / "config.yml",
            """\
            sync:
              strategy: remote_wins
              max_parallel_runs: 8
            """,
        )
        unified = load_unified_config()
        assert unified.sync.strategy == "remote_wins"
        assert unified.sync.max_parallel_runs == 8

    def test_invalid_section(self, isolated):
        work, _ = isolated
        _write(work / ".issue_sync" / "config.yml", "sync:\n  lock_mode: wait\n")
        with pytest.raises(ValueError, match="Invalid issue-sync configuration"):
            load_unified_config()


# -------------------------------------------------------------------------
# Starter config
# -------------------------------------------------------------------------


class TestEnsureConfig:
    def test_creates_starter(self, isolated):
        work, _ = isolated
        path = ensure_config()
        assert path == work / ".issue_sync" / "config.yml"
        text = path.read_text()
        assert "GITHUB_TOKEN" in text
        assert yaml.safe_load(text) is None

    def test_explicit_target(self, isolated, tmp_path):
        target = tmp_path / "deep" / "dir" / "config.yml"
        assert ensure_config(target) == target
        assert target.exists()

    def test_existing_file_kept(self, isolated):
        work, _ = isolated
        existing = _write(work / ".issue_sync" / "config.yml", "sync: {}\n")
        assert ensure_config().resolve() == existing.resolve()
        assert existing.read_text() == "sync: {}\n"
