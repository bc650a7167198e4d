"""
Host nginx reverse proxy and Let's Encrypt certificate for the stack.
"""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from shlex import quote
from typing import Dict, List

from ninja_deploy.config import PUBLIC_HTTP_PORT, Config
from ninja_deploy.log import Outcome, die, ensure, probe, query, say, sh, warn
from ninja_deploy.system import apt_install

LETSENCRYPT_LOG_DIR = Path("/var/log/letsencrypt/")

NGINX_BASELINE_TEMPLATE = """\
user www-data;
worker_processes auto;
pid /run/nginx.pid;
include {root}/modules-enabled/*.conf;

events {{ worker_connections 768; }}

http {{
    sendfile on;
    tcp_nopush on;
    types_hash_max_size 2048;
    include {root}/mime.types;
    default_type application/octet-stream;
    access_log /var/log/nginx/access.log;
    error_log /var/log/nginx/error.log;
    gzip on;
    include {root}/conf.d/*.conf;
    include {root}/sites-enabled/*;
}}
"""


@dataclass(frozen=True)
class PortHolder:
    container_id: str
    name: str
    project: str


def ensure_nginx_and_certbot() -> None:
    if shutil.which("nginx") and shutil.which("certbot"):
        say("[OK] nginx and certbot already installed")
        return
    apt_install(["nginx", "certbot", "python3-certbot-nginx"])


def render_nginx_baseline(nginx_dir: Path) -> str:
    return NGINX_BASELINE_TEMPLATE.format(root=nginx_dir)


def ensure_nginx_main_config(cfg: Config) -> bool:
    """
    Replace nginx.conf with a known-good baseline when it does not load
    sites-enabled. Returns True when the file was rewritten.
    """
    path = cfg.nginx_main_config_path
    current = path.read_text(encoding="utf-8") if path.exists() else ""
    if f"include {cfg.nginx_dir}/sites-enabled/" in current:
        return False
    say("[!] Rebuilding nginx.conf to include sites-enabled")
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        backup = path.with_suffix(".conf.bak")
        backup.write_text(current, encoding="utf-8")
        say(f"[NGINX] Backed up main config: {backup}")
    path.write_text(render_nginx_baseline(cfg.nginx_dir), encoding="utf-8")
    return True


def list_port_holders(port: int = PUBLIC_HTTP_PORT) -> List[PortHolder]:
    out = query(
        [
            "docker",
            "ps",
            "--filter",
            f"publish={port}",
            "--format",
            '{{.ID}}\t{{.Names}}\t{{.Label "com.docker.compose.project"}}',
        ]
    )
    holders: List[PortHolder] = []
    for line in out.splitlines():
        fields = line.split("\t")
        if not fields or not fields[0].strip():
            continue
        fields += [""] * (3 - len(fields))
        holders.append(PortHolder(fields[0].strip(), fields[1].strip(), fields[2].strip()))
    return holders


def stop_port_holders(cfg: Config) -> Dict[str, Outcome]:
    """
    Stop containers still publishing the public HTTP port so host nginx can
    bind it. Containers outside this stack are only stopped when
    `stop_port_conflicts` is set.
    """
    results: Dict[str, Outcome] = {}
    holders = list_port_holders()
    if not holders:
        say(f"[OK] No container publishes port {PUBLIC_HTTP_PORT}")
        return results
    for holder in holders:
        own = holder.project == cfg.compose_project_name
        if not own and not cfg.stop_port_conflicts:
            warn(
                f"{holder.name} ({holder.project or 'no compose project'}) publishes "
                f"port {PUBLIC_HTTP_PORT}; leaving it running"
            )
            results[holder.name] = Outcome.SATISFIED
            continue
        if not own:
            warn(f"{holder.name} is not part of this stack but holds port {PUBLIC_HTTP_PORT}")
        results[holder.name] = ensure(
            f"stop {holder.name}",
            f"docker stop {quote(holder.container_id)}",
        )
    time.sleep(2)
    return results


def restart_nginx() -> None:
    ensure(
        "enable nginx service",
        "systemctl enable nginx",
        satisfied=lambda: probe(["systemctl", "is-enabled", "--quiet", "nginx"]),
    )
    sh("systemctl restart nginx", check=False)
    time.sleep(2)
    if not probe(["systemctl", "is-active", "--quiet", "nginx"]):
        die("Nginx failed to start")
    say("[+] Nginx service active")


def render_site_config(cfg: Config) -> str:
    return (
        "server {\n"
        "    listen 80;\n"
        f"    server_name {cfg.domain};\n"
        "\n"
        "    location /.well-known/acme-challenge/ {\n"
        f"        root {cfg.acme_webroot};\n"
        "    }\n"
        "\n"
        "    location / {\n"
        f"        proxy_pass http://127.0.0.1:{cfg.internal_port};\n"
        "        proxy_set_header Host $host;\n"
        "        proxy_set_header X-Real-IP $remote_addr;\n"
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;\n"
        "        proxy_set_header X-Forwarded-Proto $scheme;\n"
        "        proxy_redirect off;\n"
        "    }\n"
        "}\n"
    )


def write_site_config(cfg: Config) -> bool:
    available = cfg.nginx_site_available_path
    content = render_site_config(cfg)
    available.parent.mkdir(parents=True, exist_ok=True)
    cfg.acme_webroot.mkdir(parents=True, exist_ok=True)
    if available.exists() and available.read_text(encoding="utf-8") == content:
        say(f"[OK] Site file unchanged: {available}")
        return False
    available.write_text(content, encoding="utf-8")
    say(f"[NGINX] Wrote site file: {available}")
    return True


def activate_site(cfg: Config) -> None:
    available = cfg.nginx_site_available_path
    enabled = cfg.nginx_site_enabled_path
    enabled.parent.mkdir(parents=True, exist_ok=True)
    if enabled.exists() or enabled.is_symlink():
        if enabled.is_symlink() and Path(enabled.resolve()) == available.resolve():
            return
        enabled.unlink()
    enabled.symlink_to(available)


def validate_and_reload() -> None:
    if sh("nginx -t", check=False) != 0:
        die("nginx configuration test failed; not reloading.")
    sh("systemctl reload nginx")


def issue_certificate(cfg: Config) -> bool:
    """
    Request a certificate via the certbot nginx plugin, which also rewrites
    the site for the HTTP->HTTPS redirect. A failure leaves the site on
    plain HTTP and is not fatal.
    """
    say(f"[*] Requesting Let's Encrypt certificate for {cfg.domain}")
    cmd = (
        f"certbot --nginx -d {quote(cfg.domain)} "
        "--non-interactive --agree-tos "
        f"-m {quote(cfg.admin.email)} --redirect"
    )
    if sh(cmd, check=False) != 0:
        warn(f"Let's Encrypt certificate request failed; check {LETSENCRYPT_LOG_DIR}")
        return False
    say(f"[+] SSL certificate successfully issued for {cfg.domain}")
    sh("systemctl reload nginx", check=False)
    return True


def configure_reverse_proxy(cfg: Config) -> None:
    ensure_nginx_and_certbot()
    ensure_nginx_main_config(cfg)
    stop_port_holders(cfg)
    restart_nginx()
    write_site_config(cfg)
    activate_site(cfg)
    validate_and_reload()
