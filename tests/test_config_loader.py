"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from ghostctl.config import IN_PROCESS_MIGRATION_MAJOR, AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.package_name == "ghost"
    assert config.keep_versions == 2
    assert config.migration_threshold_major == IN_PROCESS_MIGRATION_MAJOR == 2
    assert config.rollback_policy == "confirm"
    assert config.polling.max_tries == 20
    assert config.systemd.unit_prefix == "ghost_"
    assert config.logs_dir == Path("~/.ghostctl/logs").expanduser()


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "ghostctl.yml"
    cfg.write_text(
        "keep_versions: 3\n"
        "rollback_policy: never\n"
        "http:\n"
        "  timeout: 5\n"
        "polling:\n"
        "  max_tries: 2\n"
        "  delay_on_connect: 0\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.keep_versions == 3
    assert config.rollback_policy == "never"
    assert config.http.timeout == 5.0
    assert config.http.theme_check_path == "/themes/active/check/"
    assert config.polling.max_tries == 2
    assert config.polling.delay_on_connect == 0.0


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "ghostctl.yml"
    cfg.write_text("keep_versions: 3\n", encoding="utf-8")
    env = {
        "GHOSTCTL_KEEP_VERSIONS": "4",
        "GHOSTCTL_POLLING__MAX_TRIES": "7",
        "GHOSTCTL_SYSTEMD__UNIT_PREFIX": "blog_",
        "GHOSTCTL_LOGS_DIR": str(tmp_path / "logs"),
        "GHOSTCTL_SKIP_NPM": "1",
        "UNRELATED": "x",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.keep_versions == 4
    assert config.polling.max_tries == 7
    assert config.systemd.unit_prefix == "blog_"
    assert config.logs_dir == tmp_path / "logs"


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """GHOSTCTL_CONFIG_FILE points at an alternate file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("package_name: ghost-fork\n", encoding="utf-8")

    config = load_config(env={"GHOSTCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.package_name == "ghost-fork"


def test_overrides_win_over_everything(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={"GHOSTCTL_ROLLBACK_POLICY": "never"},
        overrides={"rollback_policy": "always"},
    )
    assert config.rollback_policy == "always"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("bogus: 1\n", "Unknown configuration keys: bogus"),
        ("rollback_policy: sometimes\n", "Unsupported rollback policy"),
        ("keep_versions: 0\n", "keep_versions must be at least 1"),
        ("polling:\n  retry_interval: -1\n", "must be greater than zero"),
        ("http:\n  proxy: x\n", "Unknown http configuration keys: proxy"),
        ("- a\n- b\n", "mapping at the top level"),
        ("keep_versions: true\n", "Got boolean"),
    ],
)
def test_invalid_config_values_raise(tmp_path: Path, content: str, message: str) -> None:
    """Invalid configuration is rejected with a descriptive error."""
    cfg = tmp_path / "ghostctl.yml"
    cfg.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """to_dict renders nested sections as plain mappings."""
    data = load_config(config_file=tmp_path / "absent.yml", env={}).to_dict()
    assert data["config_file"] == str(tmp_path / "absent.yml")
    assert data["polling"] == {
        "max_tries": 20,
        "retry_interval": 2.0,
        "socket_timeout": 60.0,
        "delay_on_connect": 6.0,
    }
