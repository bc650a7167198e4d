"""
CLI for the Invoice Ninja host deployment.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

from ninja_deploy.config import (
    DEFAULT_DB_NAME,
    DEFAULT_DB_USER,
    DEFAULT_DOMAIN,
    DEFAULT_INSTALL_DIR,
    DEFAULT_INTERNAL_PORT,
    AdminCredentials,
    Config,
    DatabaseCredentials,
    Scheme,
    default_admin_email,
    random_hex,
    sanitize_secret,
)


def _secret_or_random(value: Optional[str]) -> str:
    if value is None:
        return random_hex()
    return sanitize_secret(value) or random_hex()


def build_config(argv: Optional[List[str]] = None) -> Config:
    import argparse

    parser = argparse.ArgumentParser(
        prog="python -m ninja_deploy deploy --batch",
        description="Deploy Invoice Ninja behind host nginx with a Let's Encrypt certificate.",
    )
    parser.add_argument(
        "--domain",
        default=DEFAULT_DOMAIN,
        metavar="DOMAIN",
        help=f"Public domain for Invoice Ninja. (default: {DEFAULT_DOMAIN})",
    )
    parser.add_argument(
        "--scheme",
        default=Scheme.HTTPS.value,
        choices=[s.value for s in Scheme],
        metavar="SCHEME",
        help="Protocol used in APP_URL: http or https. (default: https)",
    )
    parser.add_argument(
        "--internal-port",
        type=int,
        default=DEFAULT_INTERNAL_PORT,
        metavar="PORT",
        help=f"Loopback port published by the stack. (default: {DEFAULT_INTERNAL_PORT})",
    )
    parser.add_argument("--db-name", default=DEFAULT_DB_NAME, metavar="NAME")
    parser.add_argument("--db-user", default=DEFAULT_DB_USER, metavar="USER")
    parser.add_argument(
        "--db-password",
        default=None,
        metavar="SECRET",
        help="MySQL user password. (default: random)",
    )
    parser.add_argument(
        "--db-root-password",
        default=None,
        metavar="SECRET",
        help="MySQL root password. (default: random)",
    )
    parser.add_argument(
        "--admin-email",
        default=None,
        metavar="EMAIL",
        help="Admin login and Let's Encrypt email. (default: admin@DOMAIN)",
    )
    parser.add_argument(
        "--admin-password",
        default=None,
        metavar="SECRET",
        help="Admin login password. (default: random)",
    )
    parser.add_argument(
        "--app-debug",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Write APP_DEBUG=true. (default: false)",
    )
    parser.add_argument(
        "--require-https",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Write REQUIRE_HTTPS. (default: true when --scheme is https)",
    )
    parser.add_argument(
        "--install-dir",
        default=str(DEFAULT_INSTALL_DIR),
        metavar="DIR",
        help=f"Checkout location of the stack repository. (default: {DEFAULT_INSTALL_DIR})",
    )
    parser.add_argument(
        "--keep-volumes",
        action="store_true",
        help="Keep named volumes (database data) when tearing down the old stack.",
    )
    parser.add_argument(
        "--skip-certbot",
        action="store_true",
        help="Do not request a Let's Encrypt certificate.",
    )
    parser.add_argument(
        "--no-stop-port-conflicts",
        action="store_true",
        help="Leave containers from other projects running if they hold port 80.",
    )

    raw = parser.parse_args(argv)
    scheme = Scheme(raw.scheme)
    require_https = raw.require_https
    if require_https is None:
        require_https = scheme == Scheme.HTTPS
    try:
        domain = raw.domain.strip().lower()
        return Config(
            database=DatabaseCredentials(
                name=raw.db_name,
                user=raw.db_user,
                password=_secret_or_random(raw.db_password),
                root_password=_secret_or_random(raw.db_root_password),
            ),
            admin=AdminCredentials(
                email=raw.admin_email or default_admin_email(domain),
                password=_secret_or_random(raw.admin_password),
            ),
            domain=domain,
            scheme=scheme,
            internal_port=raw.internal_port,
            app_debug=raw.app_debug,
            require_https=require_https,
            install_dir=Path(raw.install_dir).expanduser(),
            keep_volumes=raw.keep_volumes,
            skip_certbot=raw.skip_certbot,
            stop_port_conflicts=not raw.no_stop_port_conflicts,
        )
    except ValueError as exc:
        parser.error(str(exc))


def dispatch(argv: Optional[List[str]] = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="python -m ninja_deploy",
        description="Invoice Ninja single-host deployment.",
        add_help=False,
    )
    parser.add_argument("subcommand", nargs="?", default=None, choices=["deploy"])
    parser.add_argument("--help", "-h", action="store_true")

    known, remaining = parser.parse_known_args(argv)
    sub = known.subcommand

    if sub is None:
        if known.help or not sys.stdin.isatty():
            _print_help()
            return
        _run_wizard()
        return

    if sub == "deploy":
        rem = remaining or []
        if known.help or "-h" in rem or "--help" in rem:
            if "--batch" in rem:
                build_config(["--help"])
            else:
                _print_help()
            return
        if "--batch" in rem:
            _preflight()
            cfg = build_config([r for r in rem if r != "--batch"])
            from ninja_deploy.orchestrator import run_deploy

            run_deploy(cfg)
            return
        if sys.stdin.isatty():
            _run_wizard()
            return
        _print_help()


def _print_help() -> None:
    print(
        "Usage: python -m ninja_deploy [deploy] [options]\n\n"
        "Subcommands:\n"
        "  deploy              Interactive wizard (TTY) or --batch for non-interactive\n"
        "  deploy --batch ...  Non-interactive deployment\n\n"
        "Examples:\n"
        "  sudo python -m ninja_deploy\n"
        "  sudo python -m ninja_deploy deploy --batch "
        "--domain invoice.example.com --admin-email ops@example.com\n"
    )


def _preflight() -> None:
    from ninja_deploy.system import ensure_openssl, require_root

    require_root()
    ensure_openssl()


def _run_wizard() -> None:
    from ninja_deploy.orchestrator import run_deploy
    from ninja_deploy.wizard import run_wizard

    _preflight()
    cfg = run_wizard()
    run_deploy(cfg)
