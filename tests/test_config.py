"""
Tests for the settings loader — file discovery, YAML parsing, env overrides.
"""

import textwrap
from pathlib import Path

import pytest

from natsocks.core.config.loader import find_settings_file, load_settings
from natsocks.core.errors import ConfigurationError


class TestFindSettingsFile:
    def test_explicit_wins(self, tmp_path: Path):
        path, required = find_settings_file(tmp_path / "a.yml", {"NAT_SOCKS_CONFIG": "/x.yml"})
        assert path == tmp_path / "a.yml"
        assert required

    def test_env_var(self):
        path, required = find_settings_file(None, {"NAT_SOCKS_CONFIG": "/srv/settings.yml"})
        assert path == Path("/srv/settings.yml")
        assert required


class TestLoadSettings:
    def _write(self, tmp_path: Path, content: str) -> Path:
        path = tmp_path / "settings.yml"
        path.write_text(textwrap.dedent(content))
        return path

    def test_defaults_without_file(self, tmp_path: Path):
        settings = load_settings(None, env={"NAT_SOCKS_CONFIG": ""})
        assert settings.service_name == "nat-socks"

    def test_load_from_file(self, tmp_path: Path):
        path = self._write(tmp_path, """\
            service_name: edge-proxy
            pinned_version: 3.0.0
            mirror_prefix: ""
            nameservers:
              - udp://9.9.9.9:53
            prefer_ipv6: false
        """)
        settings = load_settings(path, env={})
        assert settings.service_name == "edge-proxy"
        assert settings.pinned_version == "v3.0.0"
        assert settings.mirror_prefix == ""
        assert settings.nameservers == ["udp://9.9.9.9:53"]
        assert settings.prefer_ipv6 is False

    def test_nested_settings_key(self, tmp_path: Path):
        path = self._write(tmp_path, """\
            settings:
              download_attempts: 5
        """)
        assert load_settings(path, env={}).download_attempts == 5

    def test_empty_file(self, tmp_path: Path):
        path = self._write(tmp_path, "")
        assert load_settings(path, env={}).service_name == "nat-socks"

    def test_missing_explicit_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_settings(tmp_path / "nope.yml", env={})

    def test_invalid_yaml(self, tmp_path: Path):
        path = self._write(tmp_path, "service_name: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_settings(path, env={})

    def test_not_a_mapping(self, tmp_path: Path):
        path = self._write(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_settings(path, env={})

    def test_invalid_value(self, tmp_path: Path):
        path = self._write(tmp_path, "download_attempts: 0\n")
        with pytest.raises(ConfigurationError, match="Invalid settings"):
            load_settings(path, env={})

    def test_env_overrides_file(self, tmp_path: Path):
        path = self._write(tmp_path, "service_name: from-file\n")
        settings = load_settings(path, env={
            "NAT_SOCKS_SERVICE_NAME": "from-env",
            "NAT_SOCKS_LISTEN_BUDGET": "2.5",
            "NAT_SOCKS_NAMESERVERS": "udp://1.0.0.1:53, udp://9.9.9.9:53",
        })
        assert settings.service_name == "from-env"
        assert settings.listen_budget == 2.5
        assert settings.nameservers == ["udp://1.0.0.1:53", "udp://9.9.9.9:53"]

    def test_reserved_and_unknown_env_ignored(self, tmp_path: Path):
        path = self._write(tmp_path, "{}\n")
        settings = load_settings(path, env={
            "NAT_SOCKS_LOG_LEVEL": "DEBUG",
            "NAT_SOCKS_NOT_A_FIELD": "x",
        })
        assert settings.service_name == "nat-socks"
