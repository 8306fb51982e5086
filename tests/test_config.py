"""Tests for esb/config.py: YAML profile plus ESB_* overrides."""

from __future__ import annotations

import logging

import pytest

from esb.config import BridgeConfig, load_config


def write(tmp_path, text, name="config.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), env={})
        assert config == BridgeConfig()
        assert config.port is None
        assert config.baud == 115200
        assert config.shell == "bash"

    def test_default_path_under_home(self, tmp_path):
        # HOME points at tmp_path/home for every test
        profile = tmp_path / "home" / ".config" / "esb"
        profile.mkdir(parents=True)
        (profile / "config.yaml").write_text("port: /dev/ttyACM0\n")
        assert load_config().port == "/dev/ttyACM0"

    def test_yaml_profile(self, tmp_path):
        path = write(tmp_path, """
port: /dev/ttyUSB0
baud: "921600"
username: debian
password: temppwd
disable_echo: true
capacity: 500
probe_timeouts:
  hotspots: 60000
""")
        config = load_config(path, env={})
        assert config.port == "/dev/ttyUSB0"
        assert config.baud == 921600
        assert config.username == "debian"
        assert config.password == "temppwd"
        assert config.disable_echo is True
        assert config.capacity == 500
        assert config.timeout_for("hotspots") == 60000
        assert config.timeout_for("identity") is None

    def test_empty_file_gives_defaults(self, tmp_path):
        assert load_config(write(tmp_path, ""), env={}) == BridgeConfig()

    def test_config_env_var_selects_file(self, tmp_path):
        path = write(tmp_path, "shell: sh\n", name="other.yaml")
        assert load_config(env={"ESB_CONFIG": path}).shell == "sh"

    def test_explicit_path_beats_env_var(self, tmp_path):
        explicit = write(tmp_path, "shell: ash\n", name="a.yaml")
        other = write(tmp_path, "shell: sh\n", name="b.yaml")
        assert load_config(explicit, env={"ESB_CONFIG": other}).shell == "ash"

    def test_top_level_must_be_mapping(self, tmp_path):
        path = write(tmp_path, "- port\n- baud\n")
        with pytest.raises(ValueError, match="expected a mapping"):
            load_config(path, env={})

    def test_probe_timeouts_must_be_mapping(self, tmp_path):
        path = write(tmp_path, "probe_timeouts: 5000\n")
        with pytest.raises(ValueError, match="probe_timeouts"):
            load_config(path, env={})

    def test_run_timeout(self, tmp_path):
        assert load_config(str(tmp_path / "absent.yaml"), env={}).run_timeout_ms == 15000
        assert load_config(write(tmp_path, "run_timeout_ms: '4000'\n"), env={}).run_timeout_ms == 4000

    def test_run_timeout_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError, match="run_timeout_ms must be > 0"):
            load_config(write(tmp_path, "run_timeout_ms: 0\n"), env={})

    def test_unknown_keys_are_logged(self, tmp_path, caplog):
        path = write(tmp_path, "port: /dev/ttyS0\nparity: even\n")
        with caplog.at_level(logging.WARNING, logger="esb.config"):
            config = load_config(path, env={})
        assert config.port == "/dev/ttyS0"
        assert "parity" in caplog.text


class TestEnvOverrides:
    def test_env_beats_file(self, tmp_path):
        path = write(tmp_path, "port: /dev/ttyUSB0\nbaud: 9600\nusername: debian\n")
        config = load_config(path, env={
            "ESB_PORT": "/dev/ttyUSB1",
            "ESB_BAUD": "57600",
            "ESB_USERNAME": "pi",
            "ESB_PASSWORD": "raspberry",
            "ESB_SHELL": "ash",
        })
        assert config.port == "/dev/ttyUSB1"
        assert config.baud == 57600
        assert config.username == "pi"
        assert config.password == "raspberry"
        assert config.shell == "ash"

    def test_empty_values_are_ignored(self, tmp_path):
        path = write(tmp_path, "port: /dev/ttyUSB0\n")
        assert load_config(path, env={"ESB_PORT": ""}).port == "/dev/ttyUSB0"

    def test_bad_baud(self, tmp_path):
        with pytest.raises(ValueError, match="ESB_BAUD"):
            load_config(str(tmp_path / "absent.yaml"), env={"ESB_BAUD": "fast"})

    def test_process_environment_is_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ESB_PORT", "/dev/ttyAMA0")
        assert load_config(str(tmp_path / "absent.yaml")).port == "/dev/ttyAMA0"
