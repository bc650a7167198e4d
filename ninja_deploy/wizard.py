"""
Interactive parameter collection for the Invoice Ninja deployment.
"""

from __future__ import annotations

import sys
from typing import Callable

from ninja_deploy.config import (
    DEFAULT_DB_NAME,
    DEFAULT_DB_USER,
    DEFAULT_DOMAIN,
    DEFAULT_INTERNAL_PORT,
    MIN_INTERNAL_PORT,
    AdminCredentials,
    Config,
    DatabaseCredentials,
    Scheme,
    default_admin_email,
    format_bool,
    normalize_domain,
    normalize_email,
    parse_bool,
    random_hex,
    sanitize_secret,
)


def _prompt(msg: str, default: str = "") -> str:
    suffix = f" [{default}]" if default else ""
    try:
        value = input(f"{msg}{suffix}: ").strip()
    except (EOFError, KeyboardInterrupt):
        print()
        sys.exit(0)
    return value if value else default


def _prompt_int(msg: str, default: int, min_val: int = 1, max_val: int = 65535) -> int:
    while True:
        raw = _prompt(msg, str(default))
        try:
            value = int(raw)
            if min_val <= value <= max_val:
                return value
        except ValueError:
            pass
        print(f"Please enter a number between {min_val} and {max_val}.")


def _prompt_bool(msg: str, default: bool) -> bool:
    while True:
        raw = _prompt(msg, format_bool(default))
        try:
            return parse_bool(raw)
        except ValueError:
            print("Please answer true or false.")


def _prompt_scheme(default: Scheme = Scheme.HTTPS) -> Scheme:
    while True:
        raw = _prompt("Protocol for APP_URL (http or https)", default.value).lower()
        try:
            return Scheme(raw)
        except ValueError:
            print("Please enter http or https.")


def _prompt_valid(msg: str, default: str, normalize: Callable[[str], str]) -> str:
    while True:
        value = _prompt(msg, default)
        try:
            return normalize(value)
        except ValueError as exc:
            print(f"Invalid value: {exc}")


def _confirm(msg: str, default: bool = True) -> bool:
    hint = "Y/n" if default else "y/N"
    raw = _prompt(f"{msg} ({hint})", "").lower()
    if not raw:
        return default
    return raw in ("y", "yes")


def resolve_secret(value: str, fallback: str) -> str:
    """
    Sanitize a secret; fall back to the generated default if nothing usable
    is left.
    """
    cleaned = sanitize_secret(value)
    if cleaned != value:
        print("  (removed characters outside [A-Za-z0-9._-])")
    if not cleaned:
        print("  (nothing left after sanitizing; using the generated value)")
        return fallback
    return cleaned


def _prompt_secret(msg: str) -> str:
    generated = random_hex()
    return resolve_secret(_prompt(msg, generated), generated)


def collect_config() -> Config:
    print("[*] Collecting setup parameters")
    domain = _prompt_valid("Domain for Invoice Ninja", DEFAULT_DOMAIN, normalize_domain)
    scheme = _prompt_scheme()
    internal_port = _prompt_int(
        "Internal port (localhost -> nginx container port 80)",
        DEFAULT_INTERNAL_PORT,
        min_val=MIN_INTERNAL_PORT,
    )

    db_name = _prompt("MySQL database name", DEFAULT_DB_NAME)
    db_user = _prompt("MySQL username", DEFAULT_DB_USER)
    db_password = _prompt_secret("MySQL user password")
    db_root_password = _prompt_secret("MySQL ROOT password (internal)")

    admin_email = _prompt_valid(
        "Admin login email",
        default_admin_email(domain),
        normalize_email,
    )
    admin_password = _prompt_secret("Admin password")

    app_debug = _prompt_bool("APP_DEBUG true/false", False)
    require_https = _prompt_bool("REQUIRE_HTTPS true/false", scheme == Scheme.HTTPS)

    return Config(
        database=DatabaseCredentials(
            name=db_name,
            user=db_user,
            password=db_password,
            root_password=db_root_password,
        ),
        admin=AdminCredentials(email=admin_email, password=admin_password),
        domain=domain,
        scheme=scheme,
        internal_port=internal_port,
        app_debug=app_debug,
        require_https=require_https,
    )


def run_wizard() -> Config:
    print()
    print("Invoice Ninja Deployment Wizard")
    print("Docker stack behind host nginx with a Let's Encrypt certificate.")
    print()

    cfg = collect_config()

    print()
    print("Review")
    print(f"  Domain        : {cfg.domain}")
    print(f"  APP_URL       : {cfg.app_url}")
    print(f"  Internal port : 127.0.0.1:{cfg.internal_port} -> container :80")
    print(f"  Database      : {cfg.database.name} (user {cfg.database.user})")
    print(f"  Admin email   : {cfg.admin.email}")
    print(f"  APP_DEBUG     : {format_bool(cfg.app_debug)}")
    print(f"  REQUIRE_HTTPS : {format_bool(cfg.require_https)}")
    print(f"  Stack dir     : {cfg.stack_dir}")
    print()
    print("Existing containers and volumes of this stack will be removed.")

    if not _confirm("Proceed with deployment?", default=True):
        print("Aborted.")
        sys.exit(0)

    return cfg
