#!/usr/bin/env python3
"""CLI entry point for headgate.

Noun-action subcommands:
- server: Ingress daemon management (start/stop/status)
- key: Pre-authentication keys (create/list)
- user: Coordination server users (list/create)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "server": "Ingress daemon management (start/stop/status)",
    "key": "Pre-authentication keys (create/list)",
    "user": "Coordination server users (list/create)",
}

logger = logging.getLogger(__name__)


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "server", "key")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "server":
        from server.cli import main as server_main
        rc: int = server_main(argv)
        return rc

    if noun == "key":
        from keys_cli import key_main
        rc = key_main(argv)
        return rc

    if noun == "user":
        from keys_cli import user_main
        rc = user_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, falling back to 'dev'."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
    except OSError:
        return 'dev'
    return result.stdout.strip() if result.returncode == 0 else 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"headgate {get_version()}")
    print()
    print("Usage: headgate <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'headgate <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  headgate server start --config /etc/headgate/config.yaml")
    print("  headgate server status --json")
    print("  headgate key create john -e 24h")
    print("  headgate key create -u john -e 7d -r --save-dir /tmp")
    print("  headgate key list john")
    print("  headgate user list")


def main(argv=None):
    """CLI entry point: dispatch to noun-action handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(f"headgate {get_version()}")
        return 0

    noun = argv[0]
    if noun not in NOUN_COMMANDS:
        print(f"Error: Unknown command '{noun}'")
        print_usage()
        return 1

    # server start configures its own level (--verbose)
    if noun != "server":
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    return dispatch_noun(noun, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
