# tools/tenants/__main__.py

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict

from .registry import (
    ROLE_SCOPES,
    ensure_tenant,
    issue_api_key,
    list_keys,
    list_tenants,
    revoke_key,
    set_tenant_data_mode,
)


def _print_json(payload) -> None:
    json.dump(payload, sys.stdout, indent=2, sort_keys=True)
    sys.stdout.write("\n")


def cmd_provision(args: argparse.Namespace) -> int:
    rec = ensure_tenant(tenant_id=args.tenant_id, name=args.name, data_mode=args.data_mode)
    _print_json(asdict(rec))
    return 0


def cmd_set_data_mode(args: argparse.Namespace) -> int:
    rec = set_tenant_data_mode(tenant_id=args.tenant_id, data_mode=args.data_mode)
    _print_json(asdict(rec))
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    _print_json([asdict(r) for r in list_tenants()])
    return 0


def cmd_mint_key(args: argparse.Namespace) -> int:
    key = issue_api_key(
        args.tenant_id,
        user_id=args.user_id,
        email=args.email,
        role=args.role,
        scopes=args.scope or None,
        ttl_days=args.ttl_days,
    )
    _print_json({"tenant_id": args.tenant_id, "role": args.role, "api_key": key})
    return 0


def cmd_list_keys(args: argparse.Namespace) -> int:
    _print_json(list_keys(tenant_id=args.tenant_id, include_disabled=args.include_disabled))
    return 0


def cmd_revoke_key(args: argparse.Namespace) -> int:
    revoked = revoke_key(args.prefix, tenant_id=args.tenant_id)
    _print_json({"prefix": args.prefix, "revoked": revoked})
    return 0 if revoked else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m tools.tenants",
        description="SupplyLens tenant and API key tooling",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p_prov = sub.add_parser("provision", help="Create tenant profile if missing (idempotent)")
    p_prov.add_argument("tenant_id", help="Tenant identifier")
    p_prov.add_argument("--name", help="Human-readable tenant name", default=None)
    p_prov.add_argument("--data-mode", choices=("LIVE", "SANDBOX"), default=None)
    p_prov.set_defaults(func=cmd_provision)

    p_mode = sub.add_parser("set-data-mode", help="Switch a tenant between LIVE and SANDBOX")
    p_mode.add_argument("tenant_id", help="Tenant identifier")
    p_mode.add_argument("data_mode", choices=("LIVE", "SANDBOX"))
    p_mode.set_defaults(func=cmd_set_data_mode)

    p_list = sub.add_parser("list", help="List tenant profiles")
    p_list.set_defaults(func=cmd_list)

    p_mint = sub.add_parser("mint-key", help="Issue a tenant-bound API key")
    p_mint.add_argument("tenant_id", help="Tenant identifier")
    p_mint.add_argument("--user-id", required=True)
    p_mint.add_argument("--email", default=None)
    p_mint.add_argument("--role", choices=sorted(ROLE_SCOPES), default="user")
    p_mint.add_argument(
        "--scope",
        action="append",
        help="Explicit scope (repeatable); defaults to the role's scopes",
    )
    p_mint.add_argument("--ttl-days", type=int, default=30)
    p_mint.set_defaults(func=cmd_mint_key)

    p_keys = sub.add_parser("list-keys", help="List API keys (secrets are never shown)")
    p_keys.add_argument("--tenant-id", default=None)
    p_keys.add_argument("--include-disabled", action="store_true")
    p_keys.set_defaults(func=cmd_list_keys)

    p_revoke = sub.add_parser("revoke-key", help="Disable an API key by prefix")
    p_revoke.add_argument("prefix", help="Key prefix (slk...)")
    p_revoke.add_argument("--tenant-id", default=None)
    p_revoke.set_defaults(func=cmd_revoke_key)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
