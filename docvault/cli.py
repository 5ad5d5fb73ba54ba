"""
DocVault CLI — Bootstrap and maintenance commands.

Commands:
- docvault init              — Create the metadata tables
- docvault create-workspace  — Create a workspace with its owner as first member
- docvault usage             — Show a workspace's storage usage
- docvault reconcile         — Retry pending blob deletions (optionally orphan GC, or --all sweeps)
- docvault purge-grants      — Delete expired share grants
- docvault purge-deleted     — Reclaim blobs of long-deleted documents
- docvault verify-quota      — Compare storage counters with version history
"""

from __future__ import annotations

import argparse
import json
import logging
from typing import Optional

from docvault.db.session import session_scope
from docvault.engine.config import load_config
from docvault.engine.errors import DocVaultError
from docvault.engine.runtime import VaultRuntime

logger = logging.getLogger("docvault.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docvault",
        description="DocVault — multi-tenant document vault maintenance",
    )
    parser.add_argument(
        "--config", default=None, help="Path to docvault.yaml (default: auto-discover)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # docvault init
    subparsers.add_parser("init", help="Create the metadata tables")

    # docvault create-workspace
    ws_parser = subparsers.add_parser("create-workspace", help="Create a workspace")
    ws_parser.add_argument("name", help="Workspace name")
    ws_parser.add_argument("--owner", type=int, required=True, help="Owner user id")
    ws_parser.add_argument(
        "--limit", type=int, default=None,
        help="Storage limit in bytes (default: quota.default_storage_limit)",
    )

    # docvault usage
    usage_parser = subparsers.add_parser("usage", help="Show workspace storage usage")
    usage_parser.add_argument("workspace_id", type=int)

    # docvault reconcile
    rec_parser = subparsers.add_parser("reconcile", help="Retry pending blob deletions")
    rec_parser.add_argument("--limit", type=int, default=None, help="Max entries to retry")
    rec_parser.add_argument("--orphans", action="store_true", help="Also collect orphaned blobs")
    rec_parser.add_argument("--prefix", default="", help="Blob key prefix for orphan scan")
    rec_parser.add_argument(
        "--grace-seconds", type=int, default=None,
        help="Ignore blobs younger than this (default: maintenance.orphan_grace_seconds)",
    )
    rec_parser.add_argument("--logs", action="store_true", help="Also apply log retention")
    rec_parser.add_argument(
        "--all", action="store_true", dest="run_all",
        help="Run every sweep (pending, orphans, purge, grants, quota check)",
    )

    # docvault purge-grants
    subparsers.add_parser("purge-grants", help="Delete expired share grants")

    # docvault purge-deleted
    purge_parser = subparsers.add_parser("purge-deleted", help="Reclaim blobs of deleted documents")
    purge_parser.add_argument(
        "--older-than-days", type=int, default=None,
        help="Retention in days (default: documents.deleted_retention_days)",
    )

    # docvault verify-quota
    vq_parser = subparsers.add_parser("verify-quota", help="Check storage counters")
    vq_parser.add_argument("--workspace", type=int, default=None, help="Only this workspace")
    vq_parser.add_argument("--fix", action="store_true", help="Overwrite drifting counters")

    args = parser.parse_args(argv)

    commands = {
        "init": cmd_init,
        "create-workspace": cmd_create_workspace,
        "usage": cmd_usage,
        "reconcile": cmd_reconcile,
        "purge-grants": cmd_purge_grants,
        "purge-deleted": cmd_purge_deleted,
        "verify-quota": cmd_verify_quota,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    try:
        runtime = _start_runtime(args, create_tables=args.command == "init")
    except DocVaultError as e:
        print(f"[ERROR] {e.message}")
        return 1

    try:
        return handler(args, runtime)
    except DocVaultError as e:
        print(f"[ERROR] {e.error_type}: {e.message}")
        return 1
    finally:
        runtime.shutdown()


def _start_runtime(args: argparse.Namespace, create_tables: bool = False) -> VaultRuntime:
    config = load_config(args.config)
    runtime = VaultRuntime(config)
    runtime.startup(create_tables=create_tables)
    return runtime


def cmd_init(args: argparse.Namespace, runtime: VaultRuntime) -> int:
    """Create all tables. Idempotent."""
    print("=" * 60)
    print("  DocVault Initialization")
    print("=" * 60)
    print(f"[OK] Database ready: {runtime.config.database.url.split('@')[-1]}")
    print(f"[OK] Blob store backend: {runtime.config.blob_store.backend}")
    return 0


def cmd_create_workspace(args: argparse.Namespace, runtime: VaultRuntime) -> int:
    ws = runtime.service.create_workspace(args.name, args.owner, storage_limit=args.limit)
    print(f"[OK] Created workspace {ws.id} '{ws.name}' (limit {ws.storage_limit} bytes)")
    return 0


def cmd_usage(args: argparse.Namespace, runtime: VaultRuntime) -> int:
    with session_scope(runtime.session_factory) as session:
        usage = runtime.quota_ledger.usage(session, args.workspace_id)
    print(json.dumps(usage.model_dump(), indent=2))
    return 0


def cmd_reconcile(args: argparse.Namespace, runtime: VaultRuntime) -> int:
    reconciler = runtime.reconciler
    if args.run_all:
        result = reconciler.run_all()
        if args.logs:
            result["logs"] = runtime.cleanup_logs()
        print(json.dumps(result, indent=2))
        return 0

    result = {"pending": reconciler.retry_pending_deletions(limit=args.limit)}
    if args.orphans:
        result["orphans"] = reconciler.collect_orphans(
            prefix=args.prefix, grace_seconds=args.grace_seconds,
        )
    if args.logs:
        result["logs"] = runtime.cleanup_logs()
    print(json.dumps(result, indent=2))
    return 0


def cmd_purge_grants(args: argparse.Namespace, runtime: VaultRuntime) -> int:
    removed = runtime.reconciler.purge_expired_grants()
    print(f"[OK] Removed {removed} expired grants")
    return 0


def cmd_purge_deleted(args: argparse.Namespace, runtime: VaultRuntime) -> int:
    result = runtime.reconciler.purge_deleted_documents(older_than_days=args.older_than_days)
    print(json.dumps(result, indent=2))
    return 0


def cmd_verify_quota(args: argparse.Namespace, runtime: VaultRuntime) -> int:
    """Exit status 1 when drift remains uncorrected."""
    drifts = runtime.reconciler.verify_quota(workspace_id=args.workspace, fix=args.fix)
    bad = [d for d in drifts if d.drift != 0]
    for d in bad:
        state = "fixed" if d.fixed else "DRIFT"
        print(
            f"[{state}] workspace {d.workspace_id}: recorded={d.recorded} "
            f"expected={d.expected} ({d.drift:+d})"
        )
    if not bad:
        print(f"[OK] {len(drifts)} workspace(s) consistent")
        return 0
    return 0 if args.fix else 1


if __name__ == "__main__":
    raise SystemExit(main())
