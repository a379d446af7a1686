#!/usr/bin/env python3
"""Register tenants and rotate their client keys.

Usage:
    # Register a tenant; prints the client id and key once
    python scripts/bootstrap_tenant.py register --name "Acme Shop" --idle-timeout 15

    # Rotate the key of an existing tenant
    python scripts/bootstrap_tenant.py rotate --client-id ABC123

    # List registered tenants (keys are never printed)
    python scripts/bootstrap_tenant.py list

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (an in-memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _prepare_env() -> None:
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/guardian-bootstrap"
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage Guardian tenants",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    register = sub.add_parser("register", help="Register a new tenant")
    register.add_argument("--name", required=True, help="Display name of the tenant")
    register.add_argument("--description", default=None)
    register.add_argument(
        "--idle-timeout",
        type=int,
        default=None,
        help="Minutes of inactivity before a session is closed",
    )

    rotate = sub.add_parser("rotate", help="Rotate a tenant's client key")
    rotate.add_argument("--client-id", required=True)

    sub.add_parser("list", help="List tenants")
    return parser


def run(argv: Optional[List[str]] = None, runtime=None) -> int:
    args = build_parser().parse_args(argv)
    owned = runtime is None
    if owned:
        _prepare_env()
        from guardian.service.runtime import build_runtime

        runtime = build_runtime()
    try:
        if args.command == "register":
            try:
                tenant = runtime.tenants.register(
                    args.name,
                    description=args.description,
                    idle_timeout_minutes=args.idle_timeout,
                )
            except ValueError as exc:
                print(f"Error: {exc}")
                return 1
            print("Tenant registered.")
            print(f"  Client ID:  {tenant.id}")
            print(f"  Client Key: {tenant.secret}")
            print(f"  Idle timeout: {tenant.idle_timeout_minutes} minutes")
            return 0
        if args.command == "rotate":
            secret = runtime.tenants.rotate_secret(args.client_id)
            if secret is None:
                print(f"Error: unknown client id {args.client_id}")
                return 1
            print(f"New client key for {args.client_id}: {secret}")
            return 0
        for tenant in runtime.tenants.list_tenants():
            print(f"{tenant.id}\t{tenant.name}\tidle={tenant.idle_timeout_minutes}m")
        return 0
    finally:
        if owned:
            runtime.close()


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
