from __future__ import annotations

import json

from depin_sidecar.config import (
    SidecarConfig,
    env_overrides,
    load_config,
    load_config_file,
    save_config_file,
)
from depin_sidecar.marketplace import DEFAULT_API_URL


def test_defaults_select_wallet_mode():
    cfg = SidecarConfig()
    assert cfg.auth_mode == "wallet"
    assert cfg.api_url == DEFAULT_API_URL
    assert cfg.sign_message == "Hello Nosana Node!"


def test_api_key_selects_delegated_mode():
    assert SidecarConfig(api_key="k").auth_mode == "api"


def test_merged_ignores_none_and_unknown():
    cfg = SidecarConfig(api_url="https://a").merged({"api_url": None, "bogus": 1, "provider": "acme"})
    assert cfg.api_url == "https://a"
    assert cfg.provider == "acme"


def test_env_overrides():
    env = {"DEPIN_API_KEY": "k", "ORCHESTRATOR_URL": "http://orch", "FILTRATION_URL": ""}
    assert env_overrides(env) == {"api_key": "k", "orchestrator_url": "http://orch"}


def test_redacted_hides_secrets():
    redacted = SidecarConfig(api_key="k", private_key="p").redacted()
    assert redacted["api_key"] == "***"
    assert redacted["private_key"] == "***"
    assert redacted["pinning_jwt"] is None


def test_layering(tmp_path, monkeypatch):
    path = tmp_path / "sidecar.json"
    path.write_text(json.dumps({"api_url": "https://file", "provider": "file-provider"}))
    monkeypatch.setenv("DEPIN_PROVIDER", "env-provider")
    monkeypatch.delenv("DEPIN_API_URL", raising=False)

    cfg = load_config(path, {"orchestrator_url": "http://flag"}, use_dotenv=False)

    assert cfg.api_url == "https://file"
    assert cfg.provider == "env-provider"
    assert cfg.orchestrator_url == "http://flag"


def test_save_round_trip(tmp_path):
    path = tmp_path / "nested" / "sidecar.json"
    save_config_file(path, {"api_url": "https://x"})
    assert load_config_file(path) == {"api_url": "https://x"}
    assert path.stat().st_mode & 0o777 == 0o600
    assert load_config_file(tmp_path / "missing.json") == {}
