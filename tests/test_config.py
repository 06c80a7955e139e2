"""Tests for bitbonsai_license.config -- layered server configuration."""

from __future__ import annotations

import logging
import os
from unittest.mock import patch

import pytest

from bitbonsai_license.config import (
    DEFAULT_EMAIL_FROM,
    DEFAULT_KEYS_DIR,
    DEFAULT_PORT,
    ServerConfig,
    get_config_path,
    load_config,
)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "server.yaml"
    path.touch(mode=0o600)
    return path


def _load(config_file, overrides=None):
    return load_config(overrides, config_path=config_file, load_env=False)


class TestDefaults:
    def test_no_sources(self, config_file):
        config = _load(config_file)
        assert config.keys_dir == DEFAULT_KEYS_DIR
        assert config.db_path is None
        assert config.port == DEFAULT_PORT
        assert config.host == "127.0.0.1"
        assert config.email_from == DEFAULT_EMAIL_FROM
        assert config.admin_api_key == ""

    def test_missing_file_is_fine(self, tmp_path):
        config = load_config(config_path=tmp_path / "absent.yaml", load_env=False)
        assert config == ServerConfig()


class TestPrecedence:
    def test_file_values(self, config_file):
        config_file.write_text("admin_api_key: from-file\nport: 4000\nhost: 0.0.0.0\n")
        config = _load(config_file)
        assert config.admin_api_key == "from-file"
        assert config.port == 4000
        assert config.host == "0.0.0.0"

    def test_env_beats_file(self, config_file, monkeypatch):
        config_file.write_text("admin_api_key: from-file\nstripe_webhook_secret: whsec_file\n")
        monkeypatch.setenv("ADMIN_API_KEY", "from-env")
        config = _load(config_file)
        assert config.admin_api_key == "from-env"
        assert config.stripe_webhook_secret == "whsec_file"

    def test_blank_env_is_ignored(self, config_file, monkeypatch):
        config_file.write_text("admin_api_key: from-file\n")
        monkeypatch.setenv("ADMIN_API_KEY", "   ")
        assert _load(config_file).admin_api_key == "from-file"

    def test_override_beats_env(self, config_file, monkeypatch):
        monkeypatch.setenv("LICENSE_API_PORT", "5000")
        config = _load(config_file, {"port": 6000})
        assert config.port == 6000

    def test_none_override_ignored(self, config_file, monkeypatch):
        monkeypatch.setenv("LICENSE_KEYS_DIR", "/srv/keys")
        config = _load(config_file, {"keys_dir": None, "db_path": None})
        assert config.keys_dir == "/srv/keys"

    def test_unknown_override(self, config_file):
        with pytest.raises(ValueError, match="bogus"):
            _load(config_file, {"bogus": 1})

    def test_env_config_path(self, tmp_path, monkeypatch):
        path = tmp_path / "alt.yaml"
        path.write_text("kofi_verification_token: kofi\n")
        os.chmod(path, 0o600)
        monkeypatch.setenv("BITBONSAI_CONFIG", str(path))
        assert get_config_path() == path
        assert load_config(load_env=False).kofi_verification_token == "kofi"

    def test_default_config_path(self, monkeypatch):
        monkeypatch.delenv("BITBONSAI_CONFIG")
        assert get_config_path().parts[-2:] == (".bitbonsai", "license-server.yaml")


class TestFileHandling:
    def test_invalid_yaml(self, config_file, caplog):
        config_file.write_text("port: [unclosed\n")
        with caplog.at_level(logging.WARNING):
            config = _load(config_file)
        assert config.port == DEFAULT_PORT
        assert "invalid YAML" in caplog.text

    def test_non_mapping_ignored(self, config_file):
        config_file.write_text("- a\n- b\n")
        assert _load(config_file) == ServerConfig()

    def test_unknown_keys_dropped(self, config_file, caplog):
        config_file.write_text("admin_api_key: k\nlicense_secret: nope\n")
        with caplog.at_level(logging.WARNING):
            config = _load(config_file)
        assert config.admin_api_key == "k"
        assert "license_secret" in caplog.text

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_permissive_file_warns(self, config_file, caplog):
        config_file.write_text("admin_api_key: k\n")
        os.chmod(config_file, 0o644)
        with caplog.at_level(logging.WARNING):
            _load(config_file)
        assert "chmod 600" in caplog.text


class TestCoercion:
    @pytest.mark.parametrize("raw", ["not-a-port", "0", "70000", "-1"])
    def test_bad_port_falls_back(self, config_file, monkeypatch, raw):
        monkeypatch.setenv("LICENSE_API_PORT", raw)
        assert _load(config_file).port == DEFAULT_PORT

    def test_port_string_from_env(self, config_file, monkeypatch):
        monkeypatch.setenv("LICENSE_API_PORT", "8123")
        assert _load(config_file).port == 8123

    def test_paths_expand_user(self, config_file, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        config = _load(config_file, {"keys_dir": "~/keys", "log_dir": "~/logs"})
        assert config.keys_dir == str(tmp_path / "keys")
        assert config.log_dir == str(tmp_path / "logs")


class TestToDict:
    def test_masks_secrets(self):
        config = ServerConfig(admin_api_key="admin", stripe_secret_key="sk_live_x", resend_api_key="")
        data = config.to_dict()
        assert data["admin_api_key"] == "***"
        assert data["stripe_secret_key"] == "***"
        assert data["resend_api_key"] == ""
        assert data["port"] == DEFAULT_PORT

    def test_reveal(self):
        config = ServerConfig(admin_api_key="admin")
        assert config.to_dict(reveal_secrets=True)["admin_api_key"] == "admin"


class TestDotenv:
    def test_env_file_loaded(self, config_file, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("RESEND_API_KEY=re_from_dotenv\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        with patch.dict(os.environ):
            config = load_config(config_path=config_file)
        assert config.resend_api_key == "re_from_dotenv"

    def test_set_variables_win_over_env_file(self, config_file, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("EMAIL_FROM=dotenv@x.com\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        monkeypatch.setenv("EMAIL_FROM", "shell@x.com")
        with patch.dict(os.environ):
            assert load_config(config_path=config_file).email_from == "shell@x.com"
