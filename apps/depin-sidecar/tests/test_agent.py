from __future__ import annotations

import pytest

from depin_sidecar.agent import build_controller, build_parser, load_ledger
from depin_sidecar.auth import DelegatedSigner, OfflineSigner
from depin_sidecar.config import SidecarConfig
from depin_sidecar.errors import AuthUnavailable
from depin_sidecar.marketplace import ApiMarketplaceClient, LedgerMarketplaceClient

KEY = "0x" + "22" * 32


class StubLedger:
    identity = "ledger-owner"

    def __init__(self, cfg):
        self.cfg = cfg


def fake_ledger(cfg):
    return StubLedger(cfg)


def test_api_key_builds_delegated_controller():
    controller = build_controller(SidecarConfig(api_key="k", orchestrator_url="http://orch"))
    assert isinstance(controller.marketplace, ApiMarketplaceClient)
    assert isinstance(controller.auth, DelegatedSigner)
    assert controller.auth_mode == "api"
    assert controller.orchestrator_url == "http://orch"
    controller.shutdown(timeout=0)


def test_private_key_builds_wallet_controller():
    cfg = SidecarConfig(private_key=KEY, ledger="test_agent:fake_ledger")
    controller = build_controller(cfg)
    assert isinstance(controller.marketplace, LedgerMarketplaceClient)
    assert isinstance(controller.auth, OfflineSigner)
    assert controller.marketplace.identity == "ledger-owner"
    assert controller.marketplace.ledger.cfg is cfg
    controller.shutdown(timeout=0)


def test_no_credentials():
    with pytest.raises(AuthUnavailable):
        build_controller(SidecarConfig())


def test_wallet_mode_needs_ledger():
    with pytest.raises(AuthUnavailable, match="DEPIN_LEDGER"):
        load_ledger(None, SidecarConfig(private_key=KEY))


def test_parser():
    args = build_parser().parse_args(["launch", "job.json", "--market", "mkt-1", "--public", "--gpu", "2"])
    assert args.market == "mkt-1"
    assert args.public and not args.watch
    assert args.gpu == 2

    args = build_parser().parse_args(["extend", "job-1"])
    assert args.seconds == 1800
