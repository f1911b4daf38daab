"""
Sidecar Config
==============

Settings are layered, later layers winning:

  1. ~/.depin/sidecar.json         (written by `depin-sidecar … --save`)
  2. environment / .env            (python-dotenv, never overrides real env)
  3. command-line flags

An API key selects delegated mode. Without one the sidecar signs with its own
key and needs a ledger client (`DEPIN_LEDGER=package.module:factory`).
"""

from __future__ import annotations
import json
import os
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .auth import DEFAULT_CHALLENGE
from .marketplace import DEFAULT_API_URL, DEFAULT_IPFS_GATEWAY, DEFAULT_PINNING_URL
from .node import DEFAULT_INGRESS_DOMAIN
from .sinks import DEFAULT_PROVIDER

CONFIG_PATH = Path.home() / ".depin" / "sidecar.json"

ENV_VARS = {
    "api_url":          "DEPIN_API_URL",
    "api_key":          "DEPIN_API_KEY",
    "private_key":      "DEPIN_PRIVATE_KEY",
    "ledger":           "DEPIN_LEDGER",
    "pinning_url":      "DEPIN_PINNING_URL",
    "pinning_jwt":      "DEPIN_PINNING_JWT",
    "ipfs_gateway":     "DEPIN_IPFS_GATEWAY",
    "ingress_domain":   "DEPIN_INGRESS_DOMAIN",
    "orchestrator_url": "ORCHESTRATOR_URL",
    "audit_url":        "FILTRATION_URL",
    "internal_api_key": "INTERNAL_API_KEY",
    "provider":         "DEPIN_PROVIDER",
    "sign_message":     "DEPIN_SIGN_MESSAGE",
}

SECRET_KEYS = {"api_key", "private_key", "pinning_jwt", "internal_api_key"}


@dataclass
class SidecarConfig:
    api_url:          str           = DEFAULT_API_URL
    api_key:          Optional[str] = None
    private_key:      Optional[str] = None
    ledger:           Optional[str] = None
    pinning_url:      str           = DEFAULT_PINNING_URL
    pinning_jwt:      Optional[str] = None
    ipfs_gateway:     str           = DEFAULT_IPFS_GATEWAY
    ingress_domain:   str           = DEFAULT_INGRESS_DOMAIN
    orchestrator_url: str           = "http://localhost:8080"
    audit_url:        str           = "http://localhost:8000"
    internal_api_key: str           = "dev-internal-key"
    provider:         str           = DEFAULT_PROVIDER
    sign_message:     str           = DEFAULT_CHALLENGE

    @property
    def auth_mode(self) -> str:
        return "api" if self.api_key else "wallet"

    def merged(self, overrides: dict) -> "SidecarConfig":
        known = {f.name for f in fields(self)}
        values = asdict(self)
        values.update({k: v for k, v in overrides.items() if k in known and v is not None})
        return SidecarConfig(**values)

    def redacted(self) -> dict:
        return {k: ("***" if k in SECRET_KEYS and v else v) for k, v in asdict(self).items()}


def load_config_file(path: Path) -> dict:
    if path.exists():
        return json.loads(path.read_text())
    return {}


def save_config_file(path: Path, cfg: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg, indent=2))
    path.chmod(0o600)


def env_overrides(environ: Optional[dict] = None) -> dict:
    environ = os.environ if environ is None else environ
    return {key: environ[var] for key, var in ENV_VARS.items() if environ.get(var)}


def load_config(path: Path = CONFIG_PATH, overrides: Optional[dict] = None, use_dotenv: bool = True) -> SidecarConfig:
    if use_dotenv:
        load_dotenv(override=False)
    return (
        SidecarConfig()
        .merged(load_config_file(path))
        .merged(env_overrides())
        .merged(overrides or {})
    )
