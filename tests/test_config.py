# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2025 The LiveBundle Authors

"""
LiveBundle Configuration Tests

Tests for configuration loading and validation.
Run with: pytest tests/test_config.py -v
"""

import tempfile
from pathlib import Path


def test_config_loads_defaults():
    """Test configuration loads with default values."""
    from livebundle.config import Config

    config = Config()

    assert config.server.host == "127.0.0.1"
    assert config.updater.app_ready_timeout == 10000
    assert config.updater.response_timeout == 20
    assert config.endpoints.update_url == "https://plugin.capgo.app/updates"
    assert config.endpoints.channel_url == "https://plugin.capgo.app/channel_self"
    assert config.endpoints.stats_url == "https://plugin.capgo.app/stats"


def test_config_from_yaml():
    """Test configuration loads from YAML file."""
    from livebundle.config import load_config

    yaml_content = """
server:
  host: 0.0.0.0
  port: 9000
  api_key: test-key

updater:
  app_ready_timeout: 5000
  auto_update: false
  allow_manual_bundle_error: true
  version: 2.1.0

endpoints:
  stats_url: ""

storage:
  data_directory: /custom/data

logging:
  level: DEBUG
"""

    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        f.write(yaml_content)
        f.flush()

        config = load_config(Path(f.name))

        assert config.server.host == "0.0.0.0"
        assert config.server.port == 9000
        assert config.server.api_key == "test-key"
        assert config.updater.app_ready_timeout == 5000
        assert config.updater.auto_update is False
        assert config.updater.allow_manual_bundle_error is True
        assert config.updater.version == "2.1.0"
        assert config.endpoints.stats_url == ""
        assert config.storage.data_directory == Path("/custom/data")
        assert config.logging.level == "DEBUG"


def test_config_path_conversion():
    """Test configuration converts paths correctly."""
    from livebundle.config import Config

    config = Config()

    assert isinstance(config.storage.data_directory, Path)
    assert isinstance(config.storage.builtin_path, Path)


def test_config_updater_defaults():
    """Test updater configuration defaults."""
    from livebundle.config import UpdaterConfig

    updater = UpdaterConfig()

    assert updater.auto_update is True
    assert updater.auto_delete_failed is True
    assert updater.auto_delete_previous is True
    assert updater.reset_when_update is True
    assert updater.direct_update == "false"
    assert updater.allow_manual_bundle_error is False
    assert updater.allow_modify_url is False
    assert updater.persist_custom_id is False
    assert updater.period_check_delay == 0
    assert updater.public_key is None


def test_period_check_delay_minimum():
    """Test periodic checks faster than the minimum are clamped."""
    from livebundle.config import MIN_PERIOD_CHECK_DELAY, UpdaterConfig

    assert UpdaterConfig(period_check_delay=30).period_check_delay == MIN_PERIOD_CHECK_DELAY
    assert UpdaterConfig(period_check_delay=0).period_check_delay == 0
    assert UpdaterConfig(period_check_delay=3600).period_check_delay == 3600


def test_direct_update_modes():
    """Test direct_update accepts booleans and named modes."""
    import pytest
    from pydantic import ValidationError
    from livebundle.config import UpdaterConfig

    assert UpdaterConfig(direct_update=True).direct_update == "always"
    assert UpdaterConfig(direct_update=False).direct_update == "false"
    assert UpdaterConfig(direct_update="onLaunch").direct_update == "onLaunch"

    with pytest.raises(ValidationError):
        UpdaterConfig(direct_update="sometimes")


def test_config_logging_defaults():
    """Test logging configuration defaults."""
    from livebundle.config import LoggingConfig

    logging = LoggingConfig()

    assert logging.level == "INFO"
    assert logging.file is None


def test_config_invalid_yaml():
    """Test configuration falls back to defaults on invalid YAML."""
    from livebundle.config import load_config

    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        f.write("invalid: yaml: content: [")
        f.flush()

        config = load_config(Path(f.name))

        assert config.updater.app_ready_timeout == 10000


def test_config_missing_file():
    """Test configuration handles missing file gracefully."""
    from livebundle.config import load_config

    config = load_config(Path("/nonexistent/config.yaml"))

    assert config.server.port == 8765


def test_config_env_var(monkeypatch):
    """Test LIVEBUNDLE_CONFIG selects the config file."""
    from livebundle.config import load_config

    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        f.write("updater:\n  app_id: com.example.app\n")
        f.flush()
        monkeypatch.setenv("LIVEBUNDLE_CONFIG", f.name)

        config = load_config()

        assert config.updater.app_id == "com.example.app"


def test_config_partial_yaml():
    """Test configuration merges partial YAML with defaults."""
    from livebundle.config import load_config

    yaml_content = """
server:
  port: 9999
"""

    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        f.write(yaml_content)
        f.flush()

        config = load_config(Path(f.name))

        assert config.server.port == 9999
        assert config.server.host == "127.0.0.1"
        assert config.updater.app_ready_timeout == 10000
