#!/usr/bin/env python3
"""
kubepool/cli/pool.py

CLI for bootstrapping and inspecting kubeadm scale set pools.

    python -m kubepool.cli.pool bootstrap \
       --subscription-id <sub> --cluster mycluster --name cp \
       --role control-plane --load-balancer mycluster-lb --instance-count 3

    python -m kubepool.cli.pool nat --cluster mycluster --name cp --load-balancer mycluster-lb
    python -m kubepool.cli.pool instances --cluster mycluster --name workers
    python -m kubepool.cli.pool kubeconfig --cluster mycluster

Vault and bootstrap tunables not given as flags are read from VAULT_* and
KUBEPOOL_* environment variables.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Dict

import aiofiles
from azure.identity.aio import DefaultAzureCredential

from kubepool.deployment.pool import bootstrap_pool
from kubepool.models.pool import Pool, PoolRole, SecretPurpose, secret_key
from kubepool.models.settings import BootstrapSettings
from kubepool.models.vault import VaultSettings
from kubepool.secrets.coordination import CoordinationStore, VaultSecretBackend
from kubepool.secrets.vault_client import AsyncVaultClient
from kubepool.utils.ssh import load_known_hosts, load_private_key
from kubepool.utils.vmss import VMSSAccessResolver


def _vault_settings(args: argparse.Namespace) -> VaultSettings:
    overrides: Dict[str, Any] = {}
    if args.vault_addr:
        overrides["vault_addr"] = args.vault_addr
    if args.vault_role_name:
        overrides["vault_role_name"] = args.vault_role_name
    if args.vault_token:
        overrides["direct_vault_token"] = args.vault_token
    if args.vault_token_path:
        overrides["token_path"] = args.vault_token_path
    if args.no_verify_ssl:
        overrides["verify_ssl"] = False
    return VaultSettings(**overrides)


def _bootstrap_settings(args: argparse.Namespace) -> BootstrapSettings:
    overrides: Dict[str, Any] = {}
    if getattr(args, "ssh_key", None):
        overrides["ssh_private_key_path"] = args.ssh_key
    if getattr(args, "known_hosts", None):
        overrides["ssh_known_hosts_path"] = args.known_hosts
    if getattr(args, "worker_concurrency", None):
        overrides["worker_concurrency"] = args.worker_concurrency
    return BootstrapSettings(**overrides)


def _store(vault_client: AsyncVaultClient, settings: BootstrapSettings) -> CoordinationStore:
    return CoordinationStore(
        VaultSecretBackend(vault_client, settings.coordination_prefix),
        poll_interval=settings.secret_wait_interval,
        max_attempts=settings.secret_wait_attempts,
        purge_delay=settings.purge_delay,
    )


async def _run_bootstrap(args: argparse.Namespace) -> None:
    """
    Handler for 'bootstrap':
      1) Load the SSH key and settings
      2) Bootstrap every instance of the pool
      3) Print a per-instance summary
    """
    settings = _bootstrap_settings(args)
    pool = Pool(
        cluster=args.cluster,
        name=args.name,
        role=PoolRole(args.role),
        load_balancer=args.load_balancer,
        instance_count=args.instance_count,
    )
    private_key = await load_private_key(settings.ssh_private_key_path)
    host_keys = (
        await load_known_hosts(settings.ssh_known_hosts_path)
        if settings.ssh_known_hosts_path
        else None
    )

    async with DefaultAzureCredential() as credential, VMSSAccessResolver(
        args.subscription_id,
        args.cluster,
        credential,
        poll_interval=settings.running_poll_interval,
        pool_role_tag=settings.pool_role_tag,
    ) as resolver, AsyncVaultClient(_vault_settings(args)) as vault_client:
        result = await bootstrap_pool(
            pool,
            resolver,
            _store(vault_client, settings),
            settings,
            private_key=private_key,
            host_keys=host_keys,
        )

    for inst in result.instances:
        state = "skipped (already a member)" if inst.skipped else inst.step.value
        print(
            f"{inst.instance}: {inst.role.value} -> {state} ({inst.elapsed_seconds:.0f}s)"
        )
    print(f"Kubeadm installation completed on {len(result.instances)} instance(s)")


async def _run_nat(args: argparse.Namespace) -> None:
    """Handler for 'nat': print how to reach each instance over SSH."""
    settings = _bootstrap_settings(args)
    vmss_name = f"{args.name}-vmss"

    async with DefaultAzureCredential() as credential, VMSSAccessResolver(
        args.subscription_id, args.cluster, credential
    ) as resolver:
        instances = await resolver.list_instances(vmss_name)
        public_address = await resolver.public_address(args.load_balancer)
        ports = await resolver.resolve_access(vmss_name, args.load_balancer, instances)

    print(f"{'NAME':<28} {'ID':<6} {'PRIVATE IP':<16} {'PORT':<7} SSH")
    for inst in instances:
        port = ports.get(inst.name)
        ssh_cmd = (
            f"ssh -p {port} {settings.ssh_user}@{public_address}" if port else "-"
        )
        print(
            f"{inst.name:<28} {inst.instance_id:<6} {inst.private_ip or '-':<16} "
            f"{port or '-':<7} {ssh_cmd}"
        )


async def _run_instances(args: argparse.Namespace) -> None:
    """Handler for 'instances': list the scale set's instances."""
    vmss_name = f"{args.name}-vmss"
    async with DefaultAzureCredential() as credential, VMSSAccessResolver(
        args.subscription_id, args.cluster, credential
    ) as resolver:
        instances = await resolver.list_instances(vmss_name)

    if not instances:
        print(f"No instances found in VMSS {vmss_name}")
        return
    print(f"{'NAME':<28} {'ID':<6} {'PRIVATE IP':<16} ZONE")
    for inst in instances:
        print(
            f"{inst.name:<28} {inst.instance_id:<6} {inst.private_ip or '-':<16} "
            f"{inst.zone or '-'}"
        )


async def _run_kubeconfig(args: argparse.Namespace) -> None:
    """Handler for 'kubeconfig': download the published admin kubeconfig."""
    settings = _bootstrap_settings(args)
    output = os.path.expanduser(args.output)

    async with AsyncVaultClient(_vault_settings(args)) as vault_client:
        kubeconfig = await _store(vault_client, settings).get(
            secret_key(args.cluster, SecretPurpose.KUBECONFIG)
        )

    os.makedirs(os.path.dirname(output) or ".", exist_ok=True)
    async with aiofiles.open(output, "w", encoding="utf-8") as f:
        await f.write(kubeconfig)
    os.chmod(output, 0o600)
    print(f"Kubeconfig for cluster {args.cluster} written to {output}")


def _add_vault_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--vault-role-name",
        default=None,
        help="Vault K8s auth role (mutually exclusive with --vault-token).",
    )
    group.add_argument(
        "--vault-token",
        default=None,
        help="Direct Vault token (mutually exclusive with --vault-role-name).",
    )
    parser.add_argument("--vault-addr", default=None, help="Vault server address.")
    parser.add_argument(
        "--vault-token-path",
        default=None,
        help="Path to a K8s JWT token if using role-based auth.",
    )
    parser.add_argument(
        "--no-verify-ssl",
        action="store_true",
        default=False,
        help="Disable SSL certificate verification for Vault.",
    )


def _add_pool_args(parser: argparse.ArgumentParser, with_lb: bool = True) -> None:
    parser.add_argument(
        "--subscription-id",
        default=os.environ.get("AZURE_SUBSCRIPTION_ID"),
        required="AZURE_SUBSCRIPTION_ID" not in os.environ,
        help="Azure subscription (default: $AZURE_SUBSCRIPTION_ID).",
    )
    parser.add_argument(
        "--cluster", required=True, help="Cluster name (its resource group)."
    )
    parser.add_argument(
        "--name", required=True, help="Pool name; the scale set is <name>-vmss."
    )
    if with_lb:
        parser.add_argument(
            "--load-balancer", required=True, help="Load balancer fronting the pool."
        )


def main() -> None:
    """
    Entry point for the 'pool' CLI.
    Subcommands:
      - bootstrap: run kubeadm bootstrap on an existing pool
      - nat: show NAT ports and ssh commands per instance
      - instances: list the pool's instances
      - kubeconfig: download the cluster's admin kubeconfig
    """
    parser = argparse.ArgumentParser(
        prog="kubepool.cli.pool",
        description="Bootstrap and inspect kubeadm scale set pools.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    boot = subparsers.add_parser("bootstrap", help="Bootstrap a pool with kubeadm.")
    _add_pool_args(boot)
    boot.add_argument(
        "--role",
        required=True,
        choices=[r.value for r in PoolRole],
        help="Declared role of the pool.",
    )
    boot.add_argument(
        "--instance-count",
        type=int,
        default=1,
        help="Number of instances expected to be running (default: 1).",
    )
    boot.add_argument(
        "--ssh-key", default=None, help="SSH private key (default: ~/.ssh/id_rsa)."
    )
    boot.add_argument(
        "--known-hosts",
        default=None,
        help="known_hosts file used to verify instance host keys (default: not verified).",
    )
    boot.add_argument(
        "--worker-concurrency",
        type=int,
        default=None,
        help="Worker instances joined in parallel (default: 1).",
    )
    _add_vault_args(boot)
    boot.set_defaults(func=_run_bootstrap)

    nat = subparsers.add_parser("nat", help="Show NAT ports of a pool's instances.")
    _add_pool_args(nat)
    nat.set_defaults(func=_run_nat)

    inst = subparsers.add_parser("instances", help="List a pool's instances.")
    _add_pool_args(inst, with_lb=False)
    inst.set_defaults(func=_run_instances)

    kcfg = subparsers.add_parser(
        "kubeconfig", help="Download the cluster's admin kubeconfig."
    )
    kcfg.add_argument("--cluster", required=True, help="Cluster name.")
    kcfg.add_argument(
        "--output",
        default="~/.kube/config",
        help="Destination file (default: ~/.kube/config).",
    )
    _add_vault_args(kcfg)
    kcfg.set_defaults(func=_run_kubeconfig)

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"Pool CLI error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
