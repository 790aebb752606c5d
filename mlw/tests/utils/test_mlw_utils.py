"""Tests for environment parsing and logging helpers."""

import logging
from unittest.mock import patch

import pytest

from mlw.utils.config import CrashPolicy
from mlw.utils.utils import LOG_FORMAT, get_environment_config, parse_boolean_env, print_startup_info, setup_logging
from mlw.watchers.file_watcher import WatchTarget


@pytest.mark.parametrize(
    "value, expected",
    [("true", True), ("1", True), ("YES", True), ("on", True), ("false", False), ("0", False), ("maybe", False)],
)
def test_parse_boolean_env(monkeypatch, value, expected):
    monkeypatch.setenv("MLW_TEST_FLAG", value)
    assert parse_boolean_env("MLW_TEST_FLAG") is expected


def test_parse_boolean_env_default(monkeypatch):
    monkeypatch.delenv("MLW_TEST_FLAG", raising=False)
    assert parse_boolean_env("MLW_TEST_FLAG") is False
    assert parse_boolean_env("MLW_TEST_FLAG", default="true") is True


class TestEnvironmentConfig:
    def test_defaults(self, monkeypatch):
        for name in ("MLW_CONFIG", "LOG_LEVEL", "MLW_VERBOSE"):
            monkeypatch.delenv(name, raising=False)

        assert get_environment_config() == {"config_path": "mlw.toml", "log_level": None, "verbose": False}

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("MLW_CONFIG", "dev.toml")
        monkeypatch.setenv("LOG_LEVEL", "warning")
        monkeypatch.setenv("MLW_VERBOSE", "1")

        assert get_environment_config() == {"config_path": "dev.toml", "log_level": "WARNING", "verbose": True}


class TestSetupLogging:
    def test_configures_root_logger(self):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging("debug")

        mock_basic_config.assert_called_once_with(level=logging.DEBUG, format=LOG_FORMAT, datefmt="%H:%M:%S")

    def test_unknown_level_falls_back_to_info(self):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging("nonsense")

        assert mock_basic_config.call_args.kwargs["level"] == logging.INFO


def test_print_startup_info(config_factory, src_dir, tmp_path, caplog):
    config = config_factory(
        command=("python3", "app.py", "--name", "my app"),
        ignore_pattern=r"\.git",
        crash_policy=CrashPolicy.RESTART,
        config_path=tmp_path / "mlw.toml",
    )
    logger = logging.getLogger("mlw.test")

    with caplog.at_level(logging.DEBUG, logger="mlw.test"):
        print_startup_info(config, logger)

    assert f"Configuration loaded from {tmp_path / 'mlw.toml'}" in caplog.text
    assert "Command: python3 app.py --name 'my app'" in caplog.text
    assert f"Watching path: {src_dir} (.py)" in caplog.text
    assert "crash policy=restart" in caplog.text
    assert "Ignoring paths matching" in caplog.text


def test_print_startup_info_file_target(config_factory, tmp_path, caplog):
    config = config_factory(targets=(WatchTarget.for_file(tmp_path / "app.py"),))

    with caplog.at_level(logging.INFO, logger="mlw.test"):
        print_startup_info(config, logging.getLogger("mlw.test"))

    assert f"Watching file: {tmp_path / 'app.py'}" in caplog.text
