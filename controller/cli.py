"""
Runner Pool - Command Line

Usage:
    # Provisioning API + reconciliation loop (the normal deployment)
    runner-pool serve

    # One reconciliation pass, report printed as JSON
    runner-pool reconcile-once

    # Load and validate settings, template and private key, then exit
    runner-pool check-config

    # Explicit config file / overlay profile
    runner-pool --config /etc/runner-pool/runner_pool.yaml --env production serve

Exit codes: 0 ok, 1 reconciliation pass failed, 2 invalid configuration.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass

import uvicorn

from api.cloud_init import BootDocumentRenderer
from api.server import create_app
from clients.github import GitHubClient
from clients.proxmox import ProxmoxClient
from controller.creation import CreationWorkflow
from controller.reconciler import Reconciler
from controller.tokens import ProvisioningTokens
from core.config import PoolSettings, load_settings
from core.errors import ConfigurationError
from core.health import HealthChecker
from core.logging import configure_logging
from core.secrets import read_private_key

logger = logging.getLogger("runner_pool.cli")

EXIT_OK = 0
EXIT_PASS_FAILED = 1
EXIT_BAD_CONFIG = 2


@dataclass
class Components:
    """Everything wired from one PoolSettings."""
    settings: PoolSettings
    proxmox: ProxmoxClient
    github: GitHubClient
    tokens: ProvisioningTokens
    renderer: BootDocumentRenderer
    reconciler: Reconciler
    health: HealthChecker

    def close(self) -> None:
        self.proxmox.close()
        self.github.close()


def build_components(settings: PoolSettings) -> Components:
    """Construct clients and controller objects. Raises ConfigurationError."""
    private_key = read_private_key(settings.github_private_key)
    renderer = BootDocumentRenderer.from_file(settings.user_data_template)

    proxmox = ProxmoxClient(
        settings.proxmox_url,
        settings.proxmox_token,
        insecure_tls=settings.proxmox_insecure_tls,
        task_timeout=settings.task_timeout_seconds,
        poll_interval=settings.task_poll_interval_seconds,
    )
    github = GitHubClient(
        settings.github_organization,
        settings.github_client_id,
        settings.github_installation_id,
        private_key,
        api_url=settings.github_api_url,
    )
    tokens = ProvisioningTokens(settings.jwt_secret, ttl_seconds=settings.token_ttl_seconds)
    reconciler = Reconciler(settings, proxmox, CreationWorkflow(proxmox, tokens, settings))

    health = HealthChecker()
    health.register("reconciler", reconciler.health_check)

    return Components(
        settings=settings,
        proxmox=proxmox,
        github=github,
        tokens=tokens,
        renderer=renderer,
        reconciler=reconciler,
        health=health,
    )


# ═══════════════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════════════

def cmd_serve(components: Components) -> int:
    s = components.settings
    app = create_app(
        s, components.tokens, components.github,
        components.renderer, components.health,
    )
    components.reconciler.start()
    logger.info("listening", extra={"structured": {"host": s.host, "port": s.port}})
    try:
        uvicorn.run(app, host=s.host, port=s.port, log_config=None)
    finally:
        components.reconciler.stop(timeout=s.task_timeout_seconds)
    return EXIT_OK


def cmd_reconcile_once(components: Components) -> int:
    report = components.reconciler.run_once()
    if report is None:
        return EXIT_PASS_FAILED
    print(json.dumps(report.to_dict(), indent=2))
    return EXIT_OK


def cmd_check_config(components: Components) -> int:
    s = components.settings
    print(json.dumps({
        "node": s.proxmox_node,
        "pool": s.proxmox_pool,
        "template_vmid": s.proxmox_vmid,
        "vmid_range": [s.proxmox_min_vmid, s.proxmox_max_vmid],
        "minimum_runners": s.minimum_runners,
        "labels": s.label_list,
        "public_url": s.public_url,
    }, indent=2))
    return EXIT_OK


COMMANDS = {
    "serve": cmd_serve,
    "reconcile-once": cmd_reconcile_once,
    "check-config": cmd_check_config,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runner-pool",
        description="Runner Pool - ephemeral GitHub Actions runners on Proxmox",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", default="",
        help="Base config YAML (default: $RP_CONFIG or runner_pool.yaml)",
    )
    parser.add_argument(
        "--env", default="",
        help="Overlay profile, loads config/{env}.yaml (default: $RP_ENV)",
    )
    parser.add_argument(
        "--config-dir", default="",
        help="Overlay directory (default: $RP_CONFIG_DIR or config/)",
    )

    subs = parser.add_subparsers(dest="command", help="Command")
    subs.add_parser("serve", help="Run the provisioning API and the reconciliation loop")
    subs.add_parser("reconcile-once", help="Run a single reconciliation pass")
    subs.add_parser("check-config", help="Validate configuration and exit")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_BAD_CONFIG

    configure_logging("INFO")
    try:
        settings = load_settings(args.config, env=args.env, config_dir=args.config_dir)
        configure_logging(settings.log_level)
        components = build_components(settings)
    except ConfigurationError as e:
        for error in e.errors:
            logger.critical(error)
        return EXIT_BAD_CONFIG

    try:
        return COMMANDS[args.command](components)
    finally:
        components.close()


if __name__ == "__main__":
    sys.exit(main())
