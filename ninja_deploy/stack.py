"""
Invoice Ninja compose stack: checkout, teardown, port patching, secrets, startup.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from shlex import quote
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ninja_deploy.config import (
    APP_IMAGE,
    PUBLIC_HTTP_PORT,
    REPO_BRANCH,
    REPO_URL,
    Config,
    format_bool,
)
from ninja_deploy.log import Outcome, die, ensure, query, say, sh

APP_KEY_RE = re.compile(r"base64:[^\r\n]*")
_PORTS_KEY_RE = re.compile(r"^(\s*)ports:\s*(?:#.*)?$")


class _ComposeLoader(yaml.SafeLoader):
    """
    Safe loader without YAML 1.1 base-60 integers, so an unquoted `80:80`
    stays the string compose sees instead of the integer 4880.
    """


_ComposeLoader.yaml_implicit_resolvers = {
    first: [r for r in resolvers if r[0] != "tag:yaml.org,2002:int"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
_ComposeLoader.add_implicit_resolver(
    "tag:yaml.org,2002:int",
    re.compile(r"^(?:[-+]?0b[0-1_]+|[-+]?0[0-7_]+|[-+]?(?:0|[1-9][0-9_]*)|[-+]?0x[0-9a-fA-F_]+)$"),
    list("-+0123456789"),
)


@dataclass(frozen=True)
class PortRewrite:
    service: str
    before: str
    after: str


def sync_repository(cfg: Config) -> None:
    repo = quote(str(cfg.repo_root))
    if not (cfg.repo_root / ".git").is_dir():
        say(f"[STACK] Cloning {REPO_URL} (branch {REPO_BRANCH})")
        cfg.install_dir.mkdir(parents=True, exist_ok=True)
        sh(f"git clone {quote(REPO_URL)} -b {REPO_BRANCH} {repo}")
        return
    say("[STACK] Updating existing checkout to the upstream branch tip")
    sh(
        f"cd {repo} && "
        f"git fetch origin {REPO_BRANCH} && "
        f"git checkout {REPO_BRANCH} && "
        f"git reset --hard origin/{REPO_BRANCH}"
    )


def teardown_stack(cfg: Config) -> Dict[str, Outcome]:
    if not cfg.compose_path.exists():
        say("[OK] No compose file yet; nothing to tear down")
        return {"compose down": Outcome.SATISFIED}
    down = "docker compose down --remove-orphans"
    if not cfg.keep_volumes:
        down += " --volumes"
    return {
        "compose down": ensure("compose down", f"cd {quote(str(cfg.stack_dir))} && {down}"),
        "prune containers": ensure("prune stopped containers", "docker container prune -f"),
        "prune networks": ensure("prune unused networks", "docker network prune -f"),
    }


def start_stack(cfg: Config) -> None:
    sh(f"cd {quote(str(cfg.stack_dir))} && docker compose up -d")


def split_port_binding(value: str) -> Optional[Tuple[str, str, str, str]]:
    """
    Split a short-syntax compose binding into (host_ip, host_port,
    container_port, "/proto"). Returns None for container-only entries.
    """
    text = value.strip()
    proto = ""
    if "/" in text:
        text, proto_name = text.rsplit("/", 1)
        proto = f"/{proto_name}"

    host_ip = ""
    if text.startswith("["):
        end = text.find("]:")
        if end == -1:
            return None
        host_ip = text[: end + 1]
        text = text[end + 2 :]
        parts = text.split(":")
        if len(parts) != 2:
            return None
        return host_ip, parts[0], parts[1], proto

    parts = text.split(":")
    if len(parts) == 2:
        return host_ip, parts[0], parts[1], proto
    if len(parts) == 3:
        return parts[0], parts[1], parts[2], proto
    return None


def _rebind_short(value: str, internal_port: int) -> Optional[str]:
    parsed = split_port_binding(value)
    if parsed is None:
        return None
    _host_ip, host_port, container_port, proto = parsed
    if host_port != str(PUBLIC_HTTP_PORT):
        return None
    return f"127.0.0.1:{internal_port}:{container_port}{proto}"


def _rebind_long(entry: Dict[str, Any], internal_port: int) -> Optional[Dict[str, Any]]:
    if str(entry.get("published", "")).strip() != str(PUBLIC_HTTP_PORT):
        return None
    updated = dict(entry)
    updated["host_ip"] = "127.0.0.1"
    updated["published"] = internal_port
    return updated


def _load_compose(text: str) -> Dict[str, Any]:
    payload = yaml.load(text, Loader=_ComposeLoader)
    if not isinstance(payload, dict):
        die("Compose file is not a valid YAML mapping.")
    return payload


def _rewrite_lines(text: str, replacements: Dict[str, str]) -> Tuple[str, int]:
    """
    Replace short-syntax bindings in place. Only block-list items nested
    under a `ports:` key are touched.
    """
    patterns = [
        (
            re.compile(r"^(\s*-\s*)([\"']?)" + re.escape(before) + r"\2(\s*(?:#.*)?)$"),
            after,
        )
        for before, after in replacements.items()
    ]
    count = 0
    ports_indent: Optional[int] = None
    out: List[str] = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        ending = line[len(body):]
        stripped = body.strip()
        indent = len(body) - len(body.lstrip())

        if ports_indent is not None and stripped and not stripped.startswith("#"):
            if indent < ports_indent or (indent == ports_indent and not stripped.startswith("-")):
                ports_indent = None
        key = _PORTS_KEY_RE.match(body)
        if key is not None:
            ports_indent = len(key.group(1))
        elif ports_indent is not None:
            for pattern, after in patterns:
                match = pattern.match(body)
                if match is None:
                    continue
                body = f"{match.group(1)}{match.group(2)}{after}{match.group(2)}{match.group(3)}"
                count += 1
                break
        out.append(body + ending)
    return "".join(out), count


def patch_compose_ports(cfg: Config) -> List[PortRewrite]:
    """
    Rebind every port mapping that publishes host port 80 to
    127.0.0.1:<internal_port>, keeping the container side unchanged.

    Short-syntax entries are rewritten in place so the rest of the file stays
    byte-identical. Long-syntax entries force a full YAML re-dump. A file
    without such a mapping is left untouched.
    """
    path = cfg.compose_path
    if not path.exists():
        die(f"Compose file not found: {path}")
    text = path.read_text(encoding="utf-8")
    payload = _load_compose(text)

    services = payload.get("services")
    if not isinstance(services, dict):
        say("[STACK] Compose file has no services; skipping port patch.")
        return []

    rewrites: List[PortRewrite] = []
    short: Dict[str, str] = {}
    needs_dump = False
    for name, service in services.items():
        if not isinstance(service, dict):
            continue
        ports = service.get("ports")
        if not isinstance(ports, list):
            continue
        for idx, entry in enumerate(ports):
            if isinstance(entry, dict):
                updated = _rebind_long(entry, cfg.internal_port)
                if updated is None:
                    continue
                ports[idx] = updated
                needs_dump = True
                rewrites.append(
                    PortRewrite(
                        str(name),
                        f"{entry.get('published')}:{entry.get('target')}",
                        f"127.0.0.1:{cfg.internal_port}:{entry.get('target')}",
                    )
                )
                continue
            value = str(entry)
            after = _rebind_short(value, cfg.internal_port)
            if after is None:
                continue
            ports[idx] = after
            short[value] = after
            rewrites.append(PortRewrite(str(name), value, after))

    if not rewrites:
        say(f"[STACK] No host port {PUBLIC_HTTP_PORT} mapping found; skipping patch.")
        return []

    new_text = ""
    if not needs_dump:
        new_text, count = _rewrite_lines(text, short)
        needs_dump = count < sum(1 for r in rewrites if r.before in short)
    if needs_dump:
        new_text = yaml.safe_dump(payload, sort_keys=False)

    path.write_text(new_text, encoding="utf-8")
    for r in rewrites:
        say(f"[+] {r.service}: patched mapping {r.before} -> {r.after}")
    return rewrites


def derive_app_key() -> str:
    sh(f"docker pull {APP_IMAGE}")
    args = ["docker", "run", "--rm", "-i", APP_IMAGE, "php", "artisan", "key:generate", "--show"]
    say("$ " + " ".join(args))
    match = APP_KEY_RE.search(query(args))
    key = match.group(0).strip() if match else ""
    if not key:
        die("APP_KEY generation failed")
    return key


def render_env_file(cfg: Config, app_key: str) -> str:
    db = cfg.database
    lines = [
        "APP_ENV=production",
        f"APP_URL={cfg.app_url}",
        f"APP_KEY={app_key}",
        f"APP_DEBUG={format_bool(cfg.app_debug)}",
        f"REQUIRE_HTTPS={format_bool(cfg.require_https)}",
        "",
        f"IN_USER_EMAIL={cfg.admin.email}",
        f"IN_PASSWORD={cfg.admin.password}",
        "",
        "DB_CONNECTION=mysql",
        "DB_HOST=mysql",
        "DB_PORT=3306",
        f"DB_DATABASE={db.name}",
        f"DB_USERNAME={db.user}",
        f"DB_PASSWORD={db.password}",
        f"DB_ROOT_PASSWORD={db.root_password}",
        "",
        f"MYSQL_USER={db.user}",
        f"MYSQL_PASSWORD={db.password}",
        f"MYSQL_DATABASE={db.name}",
        f"MYSQL_ROOT_PASSWORD={db.root_password}",
        "",
        "CACHE_DRIVER=redis",
        "SESSION_DRIVER=redis",
        "REDIS_HOST=redis",
        "TRUSTED_PROXIES=*",
    ]
    return "\n".join(lines) + "\n"


def write_env_file(cfg: Config, app_key: str) -> None:
    path = cfg.env_path
    say(f"[STACK] Writing .env -> {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(render_env_file(cfg, app_key))
