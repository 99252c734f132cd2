"""Tests for settings, policy files and logging setup."""

import io
import json
import logging

import pytest
import yaml

from logica_plan.access_policy import TrustLevel
from logica_plan.config import (
    ConfigSourceError,
    EnvConfigSource,
    FileConfigSource,
    Settings,
    configure_logging,
    load_policy,
    merge_sources,
)
from logica_plan.errors import ConfigError


class TestEnvConfigSource:
    """Tests for environment variable configuration."""

    def test_prefix_and_nesting(self):
        source = EnvConfigSource(environ={
            "LOGICA_PLAN_ENGINE": "psql",
            "LOGICA_PLAN_PER_PAGE": "50",
            "LOGICA_PLAN_POLICY__ENGINE": "psql",
            "OTHER_ENGINE": "sqlite",
        })
        assert source.load() == {"engine": "psql", "per_page": 50, "policy": {"engine": "psql"}}

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("true", True),
            ("Off", False),
            ("none", None),
            ("", None),
            ("1", 1),
            ("0", 0),
            ("2.5", 2.5),
            ('["a", "b"]', ["a", "b"]),
            ("{bad json", "{bad json"),
            ("/tmp/db.sqlite", "/tmp/db.sqlite"),
        ],
    )
    def test_value_parsing(self, raw, expected):
        assert EnvConfigSource(environ={"LOGICA_PLAN_X": raw}).load() == {"x": expected}


class TestFileConfigSource:
    """Tests for YAML and JSON configuration files."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({"engine": "psql", "per_page": 20}))
        assert FileConfigSource(path).load() == {"engine": "psql", "per_page": 20}

    def test_json(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"engine": "sqlite"}))
        assert FileConfigSource(path).load() == {"engine": "sqlite"}

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "settings.yml"
        path.write_text("")
        assert FileConfigSource(path).load() == {}

    def test_missing_file(self, tmp_path):
        assert FileConfigSource(tmp_path / "nope.yaml").load() == {}
        with pytest.raises(ConfigSourceError, match="not found"):
            FileConfigSource(tmp_path / "nope.yaml", required=True).load()

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "settings.toml"
        path.write_text("engine = 'psql'")
        with pytest.raises(ConfigSourceError, match="Unsupported file format"):
            FileConfigSource(path).load()

    def test_invalid_content(self, tmp_path):
        bad_yaml = tmp_path / "bad.yaml"
        bad_yaml.write_text("engine: [unclosed")
        with pytest.raises(ConfigSourceError, match="Failed to load config"):
            FileConfigSource(bad_yaml).load()

        not_mapping = tmp_path / "list.json"
        not_mapping.write_text("[1, 2]")
        with pytest.raises(ConfigSourceError, match="must contain a mapping"):
            FileConfigSource(not_mapping).load()

    def test_errors_are_config_errors(self):
        assert issubclass(ConfigSourceError, ConfigError)


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        settings = Settings.from_env(environ={})
        assert settings == Settings()
        assert settings.engine == "sqlite"
        assert settings.validate is True
        assert settings.per_page is None

    def test_env_overrides_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(yaml.safe_dump({"engine": "sqlite", "per_page": 20, "database": "/tmp/a.db"}))

        settings = Settings.load(path, environ={"LOGICA_PLAN_ENGINE": "PSQL", "LOGICA_PLAN_LOG_LEVEL": "debug"})
        assert settings.engine == "psql"
        assert settings.per_page == 20
        assert settings.database == "/tmp/a.db"
        assert settings.log_level == "DEBUG"

    def test_merge_sources_by_priority(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"engine": "sqlite", "nested": {"a": 1, "b": 2}}))
        merged = merge_sources([
            EnvConfigSource(environ={"LOGICA_PLAN_NESTED__B": "3"}),
            FileConfigSource(path),
        ])
        assert merged == {"engine": "sqlite", "nested": {"a": 1, "b": 3}}

    def test_missing_settings_file(self, tmp_path):
        with pytest.raises(ConfigError):
            Settings.load(tmp_path / "missing.yaml", environ={})

    def test_unknown_keys_are_ignored(self):
        settings = Settings.from_dict({"engine": "psql", "colour": "blue"})
        assert settings.engine == "psql"

    @pytest.mark.parametrize(
        "data",
        [{"engine": "mysql"}, {"per_page": "many"}, {"per_page": True}, {"validate": "maybe"}],
    )
    def test_invalid_values(self, data):
        with pytest.raises(ConfigError):
            Settings.from_dict(data)

    def test_to_dict(self):
        assert Settings(database="db.sqlite").to_dict() == {
            "engine": "sqlite",
            "database": "db.sqlite",
            "policy_path": None,
            "per_page": None,
            "validate": True,
            "log_level": "WARNING",
        }


class TestLoadPolicy:
    """Tests for load_policy()."""

    def test_top_level_policy(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(yaml.safe_dump({
            "engine": "psql",
            "trust": "untrusted",
            "allowed_schemas": ["Public"],
            "allowed_functions": {"psql": ["count", "date_trunc"]},
        }))
        policy = load_policy(path)
        assert policy.trust == TrustLevel.UNTRUSTED
        assert policy.allowed_schemas == ("public",)
        assert policy.resolved_allowed_functions() == frozenset({"count", "date_trunc"})

    def test_nested_policy(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"access_policy": {"trust": "trusted"}}))
        assert load_policy(path).is_trusted

    def test_invalid_policy(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(yaml.safe_dump({"trust": "untrusted", "allowed_tables": ["x"]}))
        with pytest.raises(ConfigError, match="Invalid access policy"):
            load_policy(path)

        path.write_text(yaml.safe_dump({"trust": "sometimes"}))
        with pytest.raises(ConfigError, match="Unknown trust"):
            load_policy(path)

    def test_missing_policy(self, tmp_path):
        with pytest.raises(ConfigError):
            load_policy(tmp_path / "missing.yaml")


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_installs_single_handler(self, reset_logging):
        stream = io.StringIO()
        configure_logging("debug", stream=stream)
        configure_logging("INFO", stream=stream)

        root = logging.getLogger()
        installed = [h for h in root.handlers if getattr(h, "_logica_plan", False)]
        assert len(installed) == 1
        assert root.level == logging.INFO

        logging.getLogger("logica_plan.test").info("plan built")
        assert "INFO logica_plan.test: plan built" in stream.getvalue()

    def test_unknown_level(self, reset_logging):
        with pytest.raises(ConfigError, match="Unknown log level: LOUD"):
            configure_logging("loud")
