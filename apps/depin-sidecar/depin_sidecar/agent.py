"""
DePIN Sidecar — Main Daemon
===========================

Entry point for the compute-marketplace sidecar.

Startup sequence (`depin-sidecar run`):
  1. Load config (file → env → flags)
  2. Pick the auth mode once: API key → delegated signer, else local key
  3. Recover watchdogs for jobs that were running before the restart
  4. Serve watch requests until SIGTERM / SIGINT

One-shot commands: launch, stop, extend, status, logs, balance.

Safe shutdown:
  SIGTERM → stop scheduling, interrupt every watch loop's sleep → exit.
  Jobs keep running on the marketplace; the next start re-attaches to them
  (local-identity mode) or to what the registry still remembers (API mode).
"""

from __future__ import annotations
import argparse
import importlib
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from .auth import AuthProvider, DelegatedSigner, OfflineSigner
from .config import CONFIG_PATH, SidecarConfig, load_config, load_config_file, save_config_file
from .errors import AuthUnavailable, SidecarError
from .marketplace import ApiMarketplaceClient, ContentStore, LedgerMarketplaceClient, MarketplaceClient
from .models import ResourceProfile
from .node import NodeClient
from .sinks import AuditSink, HeartbeatSink
from .watchdog import JobLifecycleController

log = logging.getLogger("depin.sidecar")


def _configure_logging(verbose: bool = False):
    logging.basicConfig(
        level   = logging.DEBUG if verbose else logging.INFO,
        format  = "[%(asctime)s] %(levelname)s %(name)s — %(message)s",
        datefmt = "%Y-%m-%dT%H:%M:%S",
    )


# ─── Wiring ───────────────────────────────────────────────────────────────────

def load_ledger(target: Optional[str], cfg: SidecarConfig):
    """Import `package.module:factory` and call factory(cfg) to get the ledger client."""
    if not target:
        raise AuthUnavailable("Local-identity mode needs a ledger client (set DEPIN_LEDGER=module:factory)")
    module_name, _, attr = target.partition(":")
    factory = getattr(importlib.import_module(module_name), attr or "create_ledger")
    return factory(cfg)


def build_controller(cfg: SidecarConfig) -> JobLifecycleController:
    store = ContentStore(cfg.pinning_url, cfg.pinning_jwt, cfg.ipfs_gateway)

    marketplace: MarketplaceClient
    auth: AuthProvider
    if cfg.auth_mode == "api":
        marketplace = ApiMarketplaceClient(cfg.api_key, store, api_url=cfg.api_url)
        auth = DelegatedSigner(marketplace.sign_message_external, challenge=cfg.sign_message)
        log.info("Sidecar initialized in API mode")
    else:
        if not cfg.private_key:
            raise AuthUnavailable("Set DEPIN_API_KEY or DEPIN_PRIVATE_KEY")
        auth = OfflineSigner.from_key(cfg.private_key, challenge=cfg.sign_message)
        marketplace = LedgerMarketplaceClient(load_ledger(cfg.ledger, cfg), store)
        log.info(f"Sidecar initialized in WALLET mode. Identity: {auth.identity}")

    return JobLifecycleController(
        marketplace      = marketplace,
        auth             = auth,
        nodes            = NodeClient(cfg.ingress_domain),
        heartbeats       = HeartbeatSink(provider=cfg.provider),
        audit_sink       = AuditSink(cfg.audit_url, cfg.internal_api_key),
        orchestrator_url = cfg.orchestrator_url,
    )


# ─── Commands ─────────────────────────────────────────────────────────────────

def _print(obj):
    print(json.dumps(obj, indent=2, default=str))


def _wait_for_signal(controller: JobLifecycleController, until_idle: bool = False):
    done = threading.Event()
    signal.signal(signal.SIGTERM, lambda s, f: done.set())
    signal.signal(signal.SIGINT,  lambda s, f: done.set())
    while not done.wait(1):
        if until_idle and controller.is_idle():
            break
    controller.shutdown()


def cmd_run(controller: JobLifecycleController, args):
    controller.start()
    recovered = controller.recover_jobs()
    log.info(f"Sidecar ready — {recovered} job(s) recovered. (Ctrl+C to stop)")
    _wait_for_signal(controller)
    log.info("Sidecar exited cleanly.")


def cmd_launch(controller: JobLifecycleController, args):
    definition = json.loads(Path(args.definition).read_text())
    confidential = not args.public
    if args.watch:
        controller.start()
        result = controller.deploy(
            definition,
            args.market,
            confidential = confidential,
            resources    = ResourceProfile(gpu=args.gpu, vcpu=args.vcpu, ram_gb=args.ram_gb),
        )
        _print(result.__dict__)
        _wait_for_signal(controller, until_idle=True)
        return
    result = controller.launch_job(definition, args.market, confidential)
    _print(result.__dict__)
    if confidential:
        log.info("Waiting for the confidential handoff to finish… (Ctrl+C to abandon)")
        controller.supervisor.join()


def cmd_stop(controller, args):
    _print(controller.stop_job(args.job))


def cmd_extend(controller, args):
    _print(controller.extend_job(args.job, args.seconds))


def cmd_status(controller, args):
    status = controller.get_job(args.job)
    _print({**status.__dict__, "state": status.state.name})
    if args.results:
        _print(controller.get_job_logs(args.job))


def cmd_balance(controller, args):
    _print(controller.get_balance())


def cmd_logs(controller, args):
    status = controller.get_job(args.job)
    if not status.node:
        print(f"Job {args.job} has no node yet ({status.state.name})")
        return
    closed = threading.Event()
    streamer = controller.get_log_streamer()
    streamer.on("log", lambda rec: print(json.dumps(rec)))
    streamer.on("error", lambda err: log.warning(f"log stream error: {err}"))
    streamer.on("close", closed.set)
    streamer.connect(status.node, args.job)
    signal.signal(signal.SIGINT, lambda s, f: closed.set())
    closed.wait()
    streamer.close()


# ─── Entry Point ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="depin-sidecar", description="DePIN compute sidecar")
    parser.add_argument("--config",  type=Path, default=CONFIG_PATH, help="JSON config file")
    parser.add_argument("--api-url", help="Marketplace API URL")
    parser.add_argument("--api-key", help="Marketplace API key (delegated mode)")
    parser.add_argument("--orchestrator-url", help="Inventory heartbeat target")
    parser.add_argument("--save",    action="store_true", help="Persist --api-url/--orchestrator-url to the config file")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the watchdog daemon").set_defaults(func=cmd_run)

    p = sub.add_parser("launch", help="Post a job definition")
    p.add_argument("definition", help="Path to the job definition JSON")
    p.add_argument("--market",  required=True)
    p.add_argument("--public",  action="store_true", help="Pin the full definition (no confidential handoff)")
    p.add_argument("--watch",   action="store_true", help="Stay attached and supervise the job")
    p.add_argument("--gpu",     type=int,   default=1)
    p.add_argument("--vcpu",    type=int,   default=8)
    p.add_argument("--ram-gb",  type=float, default=32)
    p.set_defaults(func=cmd_launch)

    p = sub.add_parser("stop", help="Stop a job")
    p.add_argument("job")
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser("extend", help="Extend a job's lease")
    p.add_argument("job")
    p.add_argument("--seconds", type=int, default=1800)
    p.set_defaults(func=cmd_extend)

    p = sub.add_parser("status", help="Show a job's state")
    p.add_argument("job")
    p.add_argument("--results", action="store_true", help="Also fetch results")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("logs", help="Stream a running job's logs")
    p.add_argument("job")
    p.set_defaults(func=cmd_logs)

    sub.add_parser("balance", help="Show account balance").set_defaults(func=cmd_balance)
    return parser


def main(argv: Optional[list[str]] = None):
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    overrides = {
        "api_url":          args.api_url,
        "api_key":          args.api_key,
        "orchestrator_url": args.orchestrator_url,
    }
    cfg = load_config(args.config, overrides)
    log.debug(f"Config: {cfg.redacted()}")
    if args.save:
        saved = load_config_file(args.config)
        saved.update({k: v for k, v in overrides.items() if v and k != "api_key"})
        save_config_file(args.config, saved)

    try:
        controller = build_controller(cfg)
        args.func(controller, args)
    except SidecarError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
