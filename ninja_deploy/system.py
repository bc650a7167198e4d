"""
Idempotent OS-level setup: privileges, firewall and the Docker engine.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Dict, List, Sequence

from ninja_deploy.config import DOCKER_REPO_URL
from ninja_deploy.log import Outcome, die, ensure, probe, query, say, sh

OS_RELEASE_PATH = Path("/etc/os-release")
DOCKER_KEYRING_PATH = Path("/etc/apt/keyrings/docker.asc")
DOCKER_SOURCES_PATH = Path("/etc/apt/sources.list.d/docker.list")

CONFLICTING_PACKAGES = (
    "docker.io",
    "docker-doc",
    "docker-compose",
    "docker-compose-v2",
    "podman-docker",
    "containerd",
    "runc",
)
DOCKER_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)

_APT = "export DEBIAN_FRONTEND=noninteractive; apt-get"


def require_root() -> None:
    if os.geteuid() != 0:
        die("Please run as root (sudo -i).")


def read_os_release(path: Path = OS_RELEASE_PATH) -> Dict[str, str]:
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    for raw in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def detect_ubuntu() -> None:
    if not OS_RELEASE_PATH.exists():
        die(f"{OS_RELEASE_PATH} not found.")
    info = read_os_release()
    ids = {info.get("ID", "").lower(), *info.get("ID_LIKE", "").lower().split()}
    if "ubuntu" not in ids:
        die("This installer currently supports Ubuntu hosts.")


def ubuntu_codename(info: Dict[str, str]) -> str:
    codename = info.get("UBUNTU_CODENAME") or info.get("VERSION_CODENAME")
    if not codename:
        die("Could not determine the Ubuntu release codename from /etc/os-release.")
    return codename


def apt_install(packages: Sequence[str]) -> None:
    sh(f"{_APT} update -qq")
    sh(f"{_APT} install -y {' '.join(packages)}")


def package_installed(name: str) -> bool:
    status = query(["dpkg-query", "-W", "-f=${Status}", name])
    return status.strip() == "install ok installed"


def ensure_openssl() -> Outcome:
    if shutil.which("openssl"):
        return Outcome.SATISFIED
    apt_install(["openssl"])
    return Outcome.CHANGED


def _ufw_profiles() -> List[str]:
    out = query(["ufw", "app", "list"])
    profiles = []
    for line in out.splitlines():
        name = line.strip()
        if name and not name.endswith(":"):
            profiles.append(name)
    return profiles


def _ufw_active() -> bool:
    return "Status: active" in query(["ufw", "status"])


def firewall_rules(profiles: List[str]) -> List[str]:
    """
    Rules to allow, in order. Remote shell access always precedes enabling.
    """
    rules: List[str] = []
    if "Nginx Full" in profiles:
        rules.append("'Nginx Full'")
    else:
        rules.extend(["80/tcp", "443/tcp"])
    if "OpenSSH" in profiles:
        rules.append("OpenSSH")
    else:
        rules.append("22/tcp")
    return rules


def ensure_firewall() -> None:
    if shutil.which("ufw") is None:
        apt_install(["ufw"])
    for rule in firewall_rules(_ufw_profiles()):
        sh(f"ufw allow {rule}")
    sh("ufw default deny incoming")
    sh("ufw default allow outgoing")
    if _ufw_active():
        say("[OK] ufw: already enabled")
        return
    sh("ufw --force enable")


def docker_ready() -> bool:
    return package_installed("docker-ce") and probe(["docker", "compose", "version"])


def docker_sources_line(arch: str, codename: str) -> str:
    return (
        f"deb [arch={arch} signed-by={DOCKER_KEYRING_PATH}] "
        f"{DOCKER_REPO_URL} {codename} stable\n"
    )


def remove_conflicting_packages() -> Dict[str, Outcome]:
    results = {}
    for pkg in CONFLICTING_PACKAGES:
        results[pkg] = ensure(
            f"remove {pkg}",
            f"{_APT} remove -y {pkg}",
            satisfied=lambda pkg=pkg: not package_installed(pkg),
        )
    return results


def ensure_docker() -> None:
    if docker_ready():
        say("[OK] Docker engine with compose plugin already installed")
        return

    remove_conflicting_packages()
    apt_install(["ca-certificates", "curl"])
    sh(f"install -m 0755 -d {DOCKER_KEYRING_PATH.parent}")
    sh(f"curl -fsSL {DOCKER_REPO_URL}/gpg -o {DOCKER_KEYRING_PATH}")
    sh(f"chmod a+r {DOCKER_KEYRING_PATH}")

    arch = query(["dpkg", "--print-architecture"]).strip() or "amd64"
    line = docker_sources_line(arch, ubuntu_codename(read_os_release()))
    DOCKER_SOURCES_PATH.parent.mkdir(parents=True, exist_ok=True)
    DOCKER_SOURCES_PATH.write_text(line, encoding="utf-8")
    say(f"[DOCKER] Wrote {DOCKER_SOURCES_PATH}")

    apt_install(DOCKER_PACKAGES)
    ensure(
        "enable docker service",
        "systemctl enable --now docker",
        satisfied=lambda: probe(["systemctl", "is-active", "--quiet", "docker"]),
    )
