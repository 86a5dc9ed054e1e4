"""Tests for porter configuration: flags over env over config file."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from porter.config import PorterConfig, load_config
from porter.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("PORTER_"):
            monkeypatch.delenv(key)
    # Keep a stray .env out of the way
    monkeypatch.chdir(tmp_path)


class TestDefaults:
    """Without any source, the documented defaults apply."""

    def test_defaults(self, porter_home: Path):
        config = PorterConfig()
        assert config.debug is False
        assert config.output == "plaintext"
        assert config.namespace == ""
        assert config.mixin_grace_period == 5.0

    def test_paths_follow_home(self, porter_home: Path):
        config = PorterConfig()
        assert config.home_dir == porter_home
        assert config.mixins_dir == porter_home / "mixins"
        assert config.cache_dir == porter_home / "cache"
        assert config.store_path == porter_home / "porter.db"
        assert config.secrets_path == porter_home / "secrets"
        assert config.config_file == porter_home / "config.yaml"

    def test_explicit_secrets_dir(self, porter_home: Path, tmp_path: Path):
        config = PorterConfig(secrets_dir=tmp_path / "vault")
        assert config.secrets_path == tmp_path / "vault"


class TestPrecedence:
    """Flags beat environment variables, which beat the config file."""

    def test_config_file(self, porter_home: Path):
        (porter_home / "config.yaml").write_text("namespace: dev\nmixin-grace-period: 2\n")
        config = load_config()
        assert config.namespace == "dev"
        assert config.mixin_grace_period == 2.0

    def test_env_over_file(self, porter_home: Path, monkeypatch: pytest.MonkeyPatch):
        (porter_home / "config.yaml").write_text("namespace: dev\n")
        monkeypatch.setenv("PORTER_NAMESPACE", "staging")
        assert load_config().namespace == "staging"

    def test_flag_over_env(self, porter_home: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PORTER_NAMESPACE", "staging")
        assert load_config(namespace="prod").namespace == "prod"

    def test_unset_flags_ignored(self, porter_home: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PORTER_OUTPUT", "json")
        assert load_config(output=None).output == "json"

    def test_dotenv(self, porter_home: Path, tmp_path: Path):
        (tmp_path / ".env").write_text("PORTER_DEBUG=true\n")
        assert load_config().debug is True


class TestErrors:
    """Bad configuration is reported as ConfigError."""

    def test_unknown_key(self, porter_home: Path):
        (porter_home / "config.yaml").write_text("colour: blue\n")
        with pytest.raises(ConfigError, match="invalid config key 'colour'"):
            load_config()

    def test_not_a_mapping(self, porter_home: Path):
        (porter_home / "config.yaml").write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_config()

    def test_bad_yaml(self, porter_home: Path):
        (porter_home / "config.yaml").write_text("namespace: [dev\n")
        with pytest.raises(ConfigError, match="unable to parse config file"):
            load_config()

    def test_bad_value(self, porter_home: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PORTER_MIXIN_GRACE_PERIOD", "soon")
        with pytest.raises(ConfigError, match="mixin_grace_period"):
            load_config()
