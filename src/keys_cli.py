"""Pre-authentication key and user CLI.

Usage:
    headgate key create [-u] USER [-e 1h] [-r] [--save-dir DIR]
    headgate key list [USER]
    headgate user list
    headgate user create NAME
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from common import parse_duration
from config import ConfigError, GatewayConfig, load_config
from credentials import (
    CredentialError,
    CredentialManager,
    HeadscaleCLI,
)

logger = logging.getLogger(__name__)

BANNER = "=" * 42


def _add_config_arg(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Config file (default: $HEADGATE_CONFIG or FHS search path)",
    )


def create_manager(config: GatewayConfig) -> CredentialManager:
    return CredentialManager(HeadscaleCLI(config.admin_command))


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S %Z") if value else "-"


def write_key_details(
    save_dir: Path,
    username: str,
    principal_id: str,
    credential,
    expiration: str,
    server_url: str,
    generated,
) -> Path:
    """Save key details and client setup steps for the operator.

    The file holds a live secret, so it is created owner-readable only.
    """
    save_dir.mkdir(parents=True, exist_ok=True)
    path = save_dir / f"headscale-key-{username}-{generated.strftime('%Y%m%d-%H%M%S')}.txt"
    lines = [
        "Headscale Authentication Key",
        f"Generated: {_format_time(generated)}",
        f"User: {username}",
        f"User ID: {principal_id}",
        f"Expiration: {expiration} ({_format_time(credential.expires_at)})",
        f"Reusable: {'true' if credential.reusable else 'false'}",
        "",
        "Auth Key:",
        credential.secret,
        "",
        "Server URL:",
        server_url,
        "",
        "Instructions for iOS:",
        "1. Open Tailscale app",
        "2. Add account -> Use custom coordination server",
        "3. Enter server URL above",
        "4. Enter auth key above",
        "",
    ]
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))
    return path


def create_key(args, config: GatewayConfig) -> int:
    """Ensure the user exists and issue a key for it."""
    username = args.user_opt or args.user
    if not username:
        print("Error: Username is required", file=sys.stderr)
        print("Usage: headgate key create [-u] USER [-e 1h] [-r]", file=sys.stderr)
        return 1

    expiration = args.expiration or config.default_expiration
    try:
        ttl = parse_duration(expiration)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Before issuing: nothing may fail once the key exists
    try:
        server_url = config.server_url()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    manager = create_manager(config)
    try:
        principal_id = manager.ensure_principal(username)
        credential = manager.issue_credential(principal_id, ttl, reusable=args.reusable)
    except CredentialError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({
            "user": username,
            "user_id": principal_id,
            "id": credential.id,
            "key": credential.secret,
            "reusable": credential.reusable,
            "expiration": credential.expires_at.isoformat() if credential.expires_at else None,
            "server_url": server_url,
        }, indent=2))
    else:
        print()
        print(BANNER)
        print(f"AUTH KEY FOR USER: {username}")
        print(BANNER)
        print(credential.secret)
        print(BANNER)
        print(f"Expiration: {expiration}")
        print(f"Reusable: {'true' if credential.reusable else 'false'}")
        print(f"Server URL: {server_url}")
        print(BANNER)
        print()

    if args.save_dir:
        try:
            path = write_key_details(
                args.save_dir, username, principal_id, credential,
                expiration, server_url, manager.clock(),
            )
        except OSError as e:
            print(f"Error: Cannot save key details: {e}", file=sys.stderr)
            return 1
        logger.info("Key details saved to: %s", path)

    return 0


def list_keys(args, config: GatewayConfig) -> int:
    """List keys for all users or one user."""
    manager = create_manager(config)
    try:
        principal_id = None
        if args.user:
            principal = manager.find_principal(args.user)
            if principal is None:
                print(f"Error: User '{args.user}' not found", file=sys.stderr)
                return 1
            principal_id = principal.id
        credentials = manager.list_credentials(principal_id)
    except CredentialError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps([
            {
                "id": c.id,
                "user_id": c.owner_principal_id,
                "key": c.secret,
                "reusable": c.reusable,
                "used": c.used,
                "expiration": c.expires_at.isoformat() if c.expires_at else None,
                "state": manager.credential_state(c).value,
            }
            for c in credentials
        ], indent=2))
        return 0

    if not credentials:
        print("No keys found")
        return 0

    print(f"{'ID':<6} {'USER':<6} {'STATE':<9} {'REUSABLE':<9} {'EXPIRATION':<24} KEY")
    for c in credentials:
        print(
            f"{c.id:<6} {c.owner_principal_id:<6} {manager.credential_state(c).value:<9} "
            f"{str(c.reusable).lower():<9} {_format_time(c.expires_at):<24} {c.secret}"
        )
    return 0


def list_users(args, config: GatewayConfig) -> int:
    manager = create_manager(config)
    try:
        principals = manager.list_principals()
    except CredentialError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps([
            {
                "id": p.id,
                "name": p.name,
                "created_at": p.created_at.isoformat() if p.created_at else None,
            }
            for p in principals
        ], indent=2))
        return 0

    if not principals:
        print("No users found")
        return 0

    print(f"{'ID':<6} {'NAME':<24} CREATED")
    for p in principals:
        print(f"{p.id:<6} {p.name:<24} {_format_time(p.created_at)}")
    return 0


def create_user(args, config: GatewayConfig) -> int:
    manager = create_manager(config)
    try:
        principal_id = manager.ensure_principal(args.name)
    except CredentialError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"User {args.name}: id {principal_id}")
    return 0


def _run(parser: argparse.ArgumentParser, argv: list, handlers: dict) -> int:
    args = parser.parse_args(argv)
    if not args.action:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return handlers[args.action](args, config)


def key_main(argv: list) -> int:
    """Key CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="headgate key",
        description="Pre-authentication key management",
    )
    sub = parser.add_subparsers(dest="action")

    create_parser = sub.add_parser(
        "create",
        help="Create a key for a user (the user is created if missing)",
        epilog="Examples: 'key create john', 'key create -u john -e 7d -r'",
    )
    create_parser.add_argument("user", nargs="?", help="Username for the key")
    create_parser.add_argument("--user", "-u", dest="user_opt", help="Username for the key")
    create_parser.add_argument(
        "--expiration", "-e",
        help="Expiration time, e.g. 1h, 24h, 7d (default: config default_expiration)",
    )
    create_parser.add_argument(
        "--reusable", "-r", action="store_true",
        help="Make the key reusable (default: single-use)",
    )
    create_parser.add_argument(
        "--save-dir", type=Path,
        help="Write a key details file into this directory",
    )
    create_parser.add_argument("--json", action="store_true", help="Output as JSON")
    _add_config_arg(create_parser)

    list_parser = sub.add_parser("list", help="List keys (all or for one user)")
    list_parser.add_argument("user", nargs="?", help="Only keys of this user")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    _add_config_arg(list_parser)

    return _run(parser, argv, {"create": create_key, "list": list_keys})


def user_main(argv: list) -> int:
    """User CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="headgate user",
        description="Coordination server user management",
    )
    sub = parser.add_subparsers(dest="action")

    list_parser = sub.add_parser("list", help="List users")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    _add_config_arg(list_parser)

    create_parser = sub.add_parser("create", help="Create a user (no-op if it exists)")
    create_parser.add_argument("name", help="Username")
    _add_config_arg(create_parser)

    return _run(parser, argv, {"list": list_users, "create": create_user})
