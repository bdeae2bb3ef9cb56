"""Unit tests for configuration management."""

from pathlib import Path

import pytest
from gur.infrastructure.config import Config, ConfigManager, find_project_root
from pydantic import ValidationError


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep the user's ~/.config/gur/config.yaml and GUR_* env out of tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr(Path, "home", classmethod(lambda cls: home))
    for var in (
        "GUR_LOG_LEVEL",
        "GUR_ACTOR",
        "GUR_DEFAULT_PRIORITY",
        "GUR_DEFAULT_TYPE",
        "GUR_BATCH_SIZE",
        "GUR_HISTORY_LIMIT",
        "GUR_BUSY_TIMEOUT_MS",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


class TestConfig:
    """Tests for Config model."""

    def test_default_config(self) -> None:
        config = Config()

        assert config.log_level == "WARNING"
        assert config.actor == "user"
        assert config.tracker.default_priority == 2
        assert config.tracker.default_type == "task"
        assert config.maintenance.batch_size == 100
        assert config.maintenance.history_limit == 50
        assert config.database.busy_timeout_ms == 5000

    def test_log_level_validated(self) -> None:
        assert Config(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Config(log_level="LOUD")

    def test_batch_size_bounds(self) -> None:
        with pytest.raises(ValidationError):
            Config(maintenance={"batch_size": 0})


class TestConfigManager:
    """Tests for hierarchical loading."""

    def test_loads_defaults_without_files(self, tmp_path: Path) -> None:
        config = ConfigManager(tmp_path).load_config()
        assert config == Config()

    def test_yaml_hierarchy(self, tmp_path: Path, isolated_home: Path) -> None:
        """Test local.yaml overrides the user file, which overrides config.yaml."""
        data_dir = tmp_path / ".guardrails"
        data_dir.mkdir()
        (data_dir / "config.yaml").write_text(
            "actor: team\nmaintenance:\n  batch_size: 10\n  history_limit: 20\n"
        )
        user_dir = isolated_home / ".config" / "gur"
        user_dir.mkdir(parents=True)
        (user_dir / "config.yaml").write_text(
            "maintenance:\n  batch_size: 25\n"
        )
        (data_dir / "local.yaml").write_text("actor: alice\n")

        config = ConfigManager(tmp_path).load_config()

        assert config.actor == "alice"
        assert config.maintenance.batch_size == 25
        assert config.maintenance.history_limit == 20

    def test_env_vars_win(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        data_dir = tmp_path / ".guardrails"
        data_dir.mkdir()
        (data_dir / "config.yaml").write_text("actor: team\n")
        monkeypatch.setenv("GUR_ACTOR", "ci-bot")
        monkeypatch.setenv("GUR_BATCH_SIZE", "7")

        config = ConfigManager(tmp_path).load_config()

        assert config.actor == "ci-bot"
        assert config.maintenance.batch_size == 7

    def test_numeric_looking_actor_stays_a_string(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("GUR_ACTOR", "1234")
        assert ConfigManager(tmp_path).load_config().actor == "1234"

    def test_paths(self, tmp_path: Path) -> None:
        manager = ConfigManager(tmp_path)

        assert manager.get_database_path() == tmp_path / ".guardrails" / "db.sqlite"
        assert manager.is_initialized()
        assert manager.get_log_dir().is_dir()

    def test_find_project_root_walks_up(self, tmp_path: Path) -> None:
        (tmp_path / ".guardrails").mkdir()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)

        assert find_project_root(nested) == tmp_path.resolve()

    def test_find_project_root_missing(self, tmp_path: Path) -> None:
        assert find_project_root(tmp_path) is None

    def test_home_data_dir_is_not_an_ancestor_project(
        self, isolated_home: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a ~/.guardrails directory does not capture unrelated work dirs."""
        (isolated_home / ".guardrails").mkdir()
        (isolated_home / ".guardrails" / "config.yaml").write_text("actor: stale\n")
        unrelated = isolated_home / "code" / "unrelated"
        unrelated.mkdir(parents=True)

        assert find_project_root(unrelated) is None
        monkeypatch.chdir(unrelated)
        manager = ConfigManager()
        assert manager.project_root != isolated_home
        assert not manager.is_initialized()
        assert manager.load_config().actor == "user"

    def test_project_at_home_found_from_home(self, isolated_home: Path) -> None:
        (isolated_home / ".guardrails").mkdir()

        assert find_project_root(isolated_home) == isolated_home.resolve()

    def test_project_below_home_still_found(self, isolated_home: Path) -> None:
        project = isolated_home / "code" / "app"
        (project / ".guardrails").mkdir(parents=True)
        nested = project / "src"
        nested.mkdir()

        assert find_project_root(nested) == project.resolve()
