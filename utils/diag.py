from __future__ import annotations
import os, sys, subprocess, time
from importlib import metadata
from typing import Optional

SERVICE_NAME = "notification-service"
TRACKED_PACKAGES = ("asyncpg", "aiohttp", "redis")


def _git(*args: str) -> Optional[str]:
    try:
        out = subprocess.check_output(["git", *args], stderr=subprocess.DEVNULL, timeout=2)
    except (OSError, subprocess.SubprocessError):
        return None
    return out.decode().strip() or None


def git_commit_short() -> Optional[str]:
    return _git("rev-parse", "--short", "HEAD")


def repo_dirty() -> bool:
    return bool(_git("status", "--porcelain"))


def package_versions() -> dict[str, Optional[str]]:
    versions: dict[str, Optional[str]] = {}
    for name in TRACKED_PACKAGES:
        try:
            versions[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            versions[name] = None
    return versions


def build_info() -> dict:
    try:
        version = metadata.version(SERVICE_NAME)
    except metadata.PackageNotFoundError:
        version = None
    return {
        "service": SERVICE_NAME,
        "version": version,
        "python": sys.version.split()[0],
        "pid": os.getpid(),
        "packages": package_versions(),
        "git": git_commit_short(),
        "dirty": repo_dirty(),
        "time": time.strftime("%Y-%m-%d %H:%M:%S"),
    }
