from pathlib import Path

import pytest
from pydantic import ValidationError
from structlog.testing import capture_logs

from minipool.config_loader import load_config
from minipool.settings import MinipoolSettings, parse_bind_addr

REQUIRED_ENV = {
    "BITCOIN_RPC_URL": "http://127.0.0.1:8332",
    "BITCOIN_RPC_USER": "user",
    "BITCOIN_RPC_PASS": "hunter2",
}


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_missing_file(tmp_path):
    assert load_config(tmp_path / "absent.yaml", env="") == {}


def test_load_config_env_overlay(tmp_path, monkeypatch):
    monkeypatch.delenv("MINIPOOL_ENV", raising=False)
    base = write(tmp_path / "minipool.yaml", "minipool:\n  bind_addr: '0.0.0.0:3000'\n  offload_workers: 4\n")
    write(tmp_path / "minipool.prod.yaml", "minipool:\n  offload_workers: 32\n")

    assert load_config(base)["minipool"]["offload_workers"] == 4
    merged = load_config(base, env="prod")
    assert merged["minipool"] == {"bind_addr": "0.0.0.0:3000", "offload_workers": 32}

    monkeypatch.setenv("MINIPOOL_ENV", "prod")
    assert load_config(base)["minipool"]["offload_workers"] == 32


def test_load_config_reports_overlay(tmp_path):
    base = write(tmp_path / "minipool.yaml", "minipool:\n  offload_workers: 4\n")
    write(tmp_path / "minipool.prod.yaml", "minipool:\n  offload_workers: 32\n")

    with capture_logs() as logs:
        load_config(base, env="prod")
        assert load_config(base, env="staging") == {"minipool": {"offload_workers": 4}}

    assert [(entry["event"], entry["env"]) for entry in logs] == [
        ("config_overlay_applied", "prod"),
        ("config_overlay_missing", "staging"),
    ]
    assert logs[0]["path"] == str(tmp_path / "minipool.prod.yaml")
    assert logs[0]["sections"] == ["minipool"]


def test_load_config_rejects_non_mapping(tmp_path):
    path = write(tmp_path / "bad.yaml", "- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(path, env="")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("127.0.0.1:3000", ("127.0.0.1", 3000)),
        ("[::]:3001", ("::", 3001)),
        ("[::1]:8080", ("::1", 8080)),
        ("localhost:0", ("localhost", 0)),
    ],
)
def test_parse_bind_addr(value, expected):
    assert parse_bind_addr(value) == expected


@pytest.mark.parametrize("value", ["3000", "localhost", ":3000", "::1:80", "[::1]", "host:99999", "host:http"])
def test_parse_bind_addr_rejects(value):
    with pytest.raises(ValueError):
        parse_bind_addr(value)


def test_defaults_from_environment(tmp_path):
    settings = MinipoolSettings.load(tmp_path / "none.yaml", environ=REQUIRED_ENV)
    assert settings.bind_addr == "127.0.0.1:3000"
    assert settings.prometheus_bind_addr == "[::]:3001"
    assert settings.metrics_host_port == ("::", 3001)
    assert settings.rpc_timeout is None
    assert settings.offload_workers == 16
    assert settings.bitcoin_rpc_pass.get_secret_value() == "hunter2"


def test_precedence_file_env_overrides(tmp_path):
    config = write(
        tmp_path / "minipool.yaml",
        "minipool:\n"
        "  bitcoin_rpc_url: 'http://file:8332'\n"
        "  bitcoin_rpc_user: file-user\n"
        "  bitcoin_rpc_pass: file-pass\n"
        "  bind_addr: '0.0.0.0:4000'\n"
        "  offload_workers: 4\n",
    )
    env = {"BIND_ADDR": "0.0.0.0:5000", "BITCOIN_RPC_USER": "env-user"}
    settings = MinipoolSettings.load(config, overrides={"bind_addr": "0.0.0.0:6000", "log_level": None}, environ=env)
    assert settings.bitcoin_rpc_url == "http://file:8332"
    assert settings.bitcoin_rpc_user == "env-user"
    assert settings.bind_addr == "0.0.0.0:6000"
    assert settings.offload_workers == 4
    assert settings.log_level == "INFO"


def test_config_path_from_environment(tmp_path):
    config = write(tmp_path / "custom.yaml", "minipool:\n  offload_workers: 3\n")
    settings = MinipoolSettings.load(environ={**REQUIRED_ENV, "MINIPOOL_CONFIG": str(config)})
    assert settings.offload_workers == 3


def test_missing_credentials_fail(tmp_path):
    with pytest.raises(ValidationError):
        MinipoolSettings.load(tmp_path / "none.yaml", environ={"BITCOIN_RPC_URL": "http://x:1"})


@pytest.mark.parametrize(
    "field,value",
    [("bind_addr", "nope"), ("offload_workers", 0), ("log_level", "LOUD"), ("log_format", "xml")],
)
def test_invalid_values_fail(tmp_path, field, value):
    with pytest.raises(ValidationError):
        MinipoolSettings.load(tmp_path / "none.yaml", overrides={field: value}, environ=REQUIRED_ENV)


def test_password_never_rendered(tmp_path):
    settings = MinipoolSettings.load(tmp_path / "none.yaml", environ=REQUIRED_ENV)
    assert "hunter2" not in repr(settings)
    assert "hunter2" not in str(settings.redacted())
    assert settings.redacted()["bitcoin_rpc_user"] == "user"
