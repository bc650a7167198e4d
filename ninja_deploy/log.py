"""
Logging and subprocess helpers for ninja_deploy.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
import sys
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from tqdm import tqdm

LOG_PATH = Path("/var/log/ninja_deploy.log")
FALLBACK_LOG_PATH = Path("./ninja_deploy.log")

REDACT_PATTERNS = [
    re.compile(r"(_PASSWORD=)[^\s\"']+"),
    re.compile(r"(IN_PASSWORD=)[^\s\"']+"),
    re.compile(r"(APP_KEY=)[^\s\"']+"),
    re.compile(r"(base64:)[A-Za-z0-9+/=]+"),
]


class Outcome(str, Enum):
    SATISFIED = "satisfied"
    CHANGED = "changed"
    FAILED = "failed"


def redact(s: str) -> str:
    out = s
    for pat in REDACT_PATTERNS:
        out = pat.sub(r"\1<REDACTED>", out)
    return out


def log_line(s: str) -> None:
    try:
        LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        with LOG_PATH.open("a", encoding="utf-8") as f:
            f.write(s + "\n")
        return
    except OSError:
        pass
    try:
        with FALLBACK_LOG_PATH.open("a", encoding="utf-8") as f:
            f.write(s + "\n")
    except OSError:
        return


def say(s: str) -> None:
    tqdm.write(s)
    log_line(redact(s))


def warn(s: str) -> None:
    say(f"[WARN] {s}")


def die(msg: str, code: int = 1) -> None:
    tqdm.write(f"[FATAL] {msg}", file=sys.stderr)
    log_line(f"[FATAL] {msg}")
    sys.exit(code)


def sh(
    cmd: str,
    *,
    check: bool = True,
    env: Optional[Dict[str, str]] = None,
) -> int:
    safe_cmd = redact(cmd)
    tqdm.write(f"\n$ {safe_cmd}")
    log_line(f"\n$ {safe_cmd}")

    proc = subprocess.Popen(
        ["bash", "-lc", cmd],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        preexec_fn=os.setsid,
    )

    try:
        assert proc.stdout is not None
        for line in proc.stdout:
            line = redact(line.rstrip("\n"))
            tqdm.write(line)
            log_line(line)
    except KeyboardInterrupt:
        tqdm.write("[WARN] Ctrl-C received. Terminating command...")
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        raise

    rc = proc.wait()
    if check and rc != 0:
        die(f"Command failed (exit {rc}): {safe_cmd}")
    return rc


def probe(args: List[str]) -> bool:
    """
    Run a read-only check quietly and report whether it exited 0.
    """
    try:
        rc = subprocess.run(args, capture_output=True, check=False).returncode
    except FileNotFoundError:
        return False
    return rc == 0


def query(args: List[str]) -> str:
    """
    Run a read-only command quietly and return its stdout ("" on failure).
    """
    try:
        proc = subprocess.run(args, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        return ""
    if proc.returncode != 0:
        return ""
    return proc.stdout


def ensure(
    label: str,
    cmd: str,
    *,
    satisfied: Optional[Callable[[], bool]] = None,
) -> Outcome:
    """
    Converge one piece of host state.

    Skips `cmd` when `satisfied()` already holds; otherwise runs it without
    aborting, so the caller decides whether a failure matters.
    """
    if satisfied is not None and satisfied():
        say(f"[OK] {label}: already in place")
        return Outcome.SATISFIED
    rc = sh(cmd, check=False)
    if rc == 0:
        say(f"[OK] {label}")
        return Outcome.CHANGED
    warn(f"{label} failed (exit {rc}); continuing")
    return Outcome.FAILED
