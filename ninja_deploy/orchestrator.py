"""
Deployment orchestrator: runs every provisioning stage in order.
"""

from __future__ import annotations

import datetime as dt
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from tqdm import tqdm

from ninja_deploy.config import Config
from ninja_deploy.log import LOG_PATH, log_line


@dataclass
class Step:
    label: str
    fn: Callable[[], Any]
    skip_if: Optional[Callable[[], bool]] = None
    result: Any = field(default=None, repr=False)


def run_steps(steps: List[Step], bar: Any) -> None:
    for step in steps:
        if step.skip_if and step.skip_if():
            tqdm.write(f"[SKIP] {step.label}")
            log_line(f"[SKIP] {step.label}")
            bar.update(1)
            continue
        tqdm.write(f"\n[STEP] {step.label}")
        log_line(f"[STEP] {step.label}")
        t0 = time.time()
        step.result = step.fn()
        elapsed = time.time() - t0
        tqdm.write(f"[DONE] {step.label} ({elapsed:.1f}s)")
        log_line(f"[DONE] {step.label} ({elapsed:.1f}s)")
        bar.update(1)


def build_steps(cfg: Config, state: dict) -> List[Step]:
    from ninja_deploy.proxy import configure_reverse_proxy, issue_certificate
    from ninja_deploy.stack import (
        derive_app_key,
        patch_compose_ports,
        start_stack,
        sync_repository,
        teardown_stack,
        write_env_file,
    )
    from ninja_deploy.system import detect_ubuntu, ensure_docker, ensure_firewall

    def _derive() -> str:
        state["app_key"] = derive_app_key()
        return state["app_key"]

    def _certificate() -> bool:
        state["tls"] = issue_certificate(cfg)
        return state["tls"]

    return [
        Step("Check host OS", detect_ubuntu),
        Step("Configure firewall", ensure_firewall),
        Step("Install/verify Docker engine", ensure_docker),
        Step("Sync stack repository", lambda: sync_repository(cfg)),
        Step("Tear down previous stack", lambda: teardown_stack(cfg)),
        Step("Bind stack to loopback port", lambda: patch_compose_ports(cfg)),
        Step("Generate APP_KEY", _derive),
        Step("Write .env", lambda: write_env_file(cfg, state["app_key"])),
        Step("Start Invoice Ninja stack", lambda: start_stack(cfg)),
        Step("Configure nginx reverse proxy", lambda: configure_reverse_proxy(cfg)),
        Step(
            "Request Let's Encrypt certificate",
            _certificate,
            skip_if=lambda: cfg.skip_certbot,
        ),
    ]


def run_deploy(cfg: Config) -> bool:
    """
    Run the full provisioning sequence. Returns True when a TLS certificate
    was issued.
    """
    state: dict = {"app_key": None, "tls": False}
    log_line(f"=== START {dt.datetime.now(dt.timezone.utc).isoformat()} ===")
    tqdm.write(f"[INFO] Logging to: {LOG_PATH}")
    try:
        steps = build_steps(cfg, state)
        with tqdm(total=len(steps), desc="Deploying Invoice Ninja", unit="step") as bar:
            run_steps(steps, bar)
        _print_summary(cfg, tls=state["tls"])
    finally:
        log_line(f"=== END {dt.datetime.now(dt.timezone.utc).isoformat()} ===")
    return state["tls"]


def _print_summary(cfg: Config, *, tls: bool) -> None:
    scheme = "https" if tls else "http"
    print()
    print("=======================================================================")
    if tls:
        print("Invoice Ninja is now running with HTTPS reverse proxy and Let's Encrypt.")
    else:
        print("Invoice Ninja is now running behind the nginx reverse proxy (plain HTTP).")
    print()
    print(f"Access URL: {scheme}://{cfg.domain}")
    print(f"Internal (container): {cfg.internal_url}")
    print()
    print("Database:")
    print(f"  Name: {cfg.database.name}")
    print(f"  User: {cfg.database.user}")
    print(f"  Pass: {cfg.database.password}")
    print(f"  RootPW: {cfg.database.root_password}")
    print()
    print("Login:")
    print(f"  Email: {cfg.admin.email}")
    print(f"  Pass:  {cfg.admin.password}")
    print()
    print(f"Env file : {cfg.env_path}")
    print(f"Site file: {cfg.nginx_site_available_path}")
    if tls:
        print()
        print("SSL auto-renewal via systemd timer (certbot)")
    elif not cfg.skip_certbot:
        print()
        print("Certificate not issued; rerun: "
              f"certbot --nginx -d {cfg.domain} -m {cfg.admin.email} --redirect")
    print("=======================================================================")
