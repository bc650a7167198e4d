"""
Immutable configuration for an Invoice Ninja host deployment.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

REPO_URL = "https://github.com/invoiceninja/dockerfiles.git"
REPO_BRANCH = "debian"
APP_IMAGE = "invoiceninja/invoiceninja-debian:latest"
DOCKER_REPO_URL = "https://download.docker.com/linux/ubuntu"

DEFAULT_DOMAIN = "invoice.example.com"
DEFAULT_INTERNAL_PORT = 9001
MIN_INTERNAL_PORT = 1024
DEFAULT_DB_NAME = "ninja"
DEFAULT_DB_USER = "ninja"
DEFAULT_INSTALL_DIR = Path("/opt/invoiceninja")
DEFAULT_NGINX_DIR = Path("/etc/nginx")
ACME_WEBROOT = Path("/var/www/html")
PUBLIC_HTTP_PORT = 80

_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$"
)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SECRET_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]")

_TRUTHY = ("true", "yes", "y", "1", "on")
_FALSY = ("false", "no", "n", "0", "off")


class Scheme(str, Enum):
    HTTP = "http"
    HTTPS = "https"


def sanitize_secret(value: str) -> str:
    """Drop every character outside [A-Za-z0-9._-], keeping order."""
    return _SECRET_UNSAFE_RE.sub("", value)


def random_hex() -> str:
    proc = subprocess.run(
        ["openssl", "rand", "-hex", "16"],
        capture_output=True,
        text=True,
        check=True,
    )
    return proc.stdout.strip()


def parse_bool(value: str) -> bool:
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise ValueError(f"{value!r} is not a boolean (use true/false).")


def format_bool(value: bool) -> str:
    return "true" if value else "false"


def default_admin_email(domain: str) -> str:
    return f"admin@{domain}"


def normalize_domain(value: str) -> str:
    domain = str(value).strip().lower()
    if not _DOMAIN_RE.fullmatch(domain):
        raise ValueError(
            f"domain={value!r} must be a valid DNS name, e.g. invoice.example.com."
        )
    return domain


def normalize_email(value: str) -> str:
    email = str(value).strip().lower()
    if not _EMAIL_RE.fullmatch(email):
        raise ValueError(f"admin email {value!r} is not a valid address.")
    return email


def _check_secret(name: str, value: str) -> None:
    if not value:
        raise ValueError(f"{name} must not be empty.")
    if sanitize_secret(value) != value:
        raise ValueError(f"{name} may only contain [A-Za-z0-9._-].")


@dataclass(frozen=True)
class DatabaseCredentials:
    password: str
    root_password: str
    name: str = DEFAULT_DB_NAME
    user: str = DEFAULT_DB_USER

    def __post_init__(self) -> None:
        for field_name in ("name", "user"):
            value = str(getattr(self, field_name)).strip()
            if not value:
                raise ValueError(f"database {field_name} must not be empty.")
            object.__setattr__(self, field_name, value)
        _check_secret("database password", self.password)
        _check_secret("database root password", self.root_password)


@dataclass(frozen=True)
class AdminCredentials:
    email: str
    password: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "email", normalize_email(self.email))
        _check_secret("admin password", self.password)


@dataclass(frozen=True)
class Config:
    database: DatabaseCredentials
    admin: AdminCredentials
    domain: str = DEFAULT_DOMAIN
    scheme: Scheme = Scheme.HTTPS
    internal_port: int = DEFAULT_INTERNAL_PORT
    app_debug: bool = False
    require_https: bool = True
    install_dir: Path = DEFAULT_INSTALL_DIR
    nginx_dir: Path = DEFAULT_NGINX_DIR
    acme_webroot: Path = ACME_WEBROOT
    keep_volumes: bool = False
    skip_certbot: bool = False
    stop_port_conflicts: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "domain", normalize_domain(self.domain))

        object.__setattr__(self, "scheme", Scheme(self.scheme))

        # Ports below 1024 include 80 and 443, which host nginx binds itself.
        if not (MIN_INTERNAL_PORT <= int(self.internal_port) <= 65535):
            raise ValueError(
                f"internal_port={self.internal_port} must be between "
                f"{MIN_INTERNAL_PORT} and 65535."
            )
        object.__setattr__(self, "internal_port", int(self.internal_port))

    @property
    def app_url(self) -> str:
        return f"{self.scheme.value}://{self.domain}/"

    @property
    def internal_url(self) -> str:
        return f"http://127.0.0.1:{self.internal_port}/"

    @property
    def repo_root(self) -> Path:
        return self.install_dir / "dockerfiles"

    @property
    def stack_dir(self) -> Path:
        return self.repo_root / REPO_BRANCH

    @property
    def compose_path(self) -> Path:
        return self.stack_dir / "docker-compose.yml"

    @property
    def env_path(self) -> Path:
        return self.stack_dir / ".env"

    @property
    def compose_project_name(self) -> str:
        # docker compose derives the project from the working directory name.
        return self.stack_dir.name

    @property
    def nginx_main_config_path(self) -> Path:
        return self.nginx_dir / "nginx.conf"

    @property
    def nginx_site_name(self) -> str:
        return f"{self.domain}.conf"

    @property
    def nginx_site_available_path(self) -> Path:
        return self.nginx_dir / "sites-available" / self.nginx_site_name

    @property
    def nginx_site_enabled_path(self) -> Path:
        return self.nginx_dir / "sites-enabled" / self.nginx_site_name
