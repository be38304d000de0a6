# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


DEFAULT_CACHE_DIR = ".flowci/cache"
DEFAULT_ARTIFACT_DIR = ".flowci/artifacts"


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class Settings:
    """Runner defaults. Environment variables first, CLI options override."""
    cache_dir: str = DEFAULT_CACHE_DIR
    artifact_dir: str = DEFAULT_ARTIFACT_DIR
    workers: int = 1
    compare_ref: str = "origin/main"
    secrets_file: Optional[str] = None
    notify_timeout: float = 10.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        workers_raw = env.get("FLOWCI_WORKERS")
        try:
            workers = int(workers_raw) if workers_raw else default_workers()
        except ValueError:
            raise ValueError(f"FLOWCI_WORKERS must be an integer, got {workers_raw!r}") from None

        timeout_raw = env.get("FLOWCI_NOTIFY_TIMEOUT", "10")
        try:
            notify_timeout = float(timeout_raw)
        except ValueError:
            raise ValueError(f"FLOWCI_NOTIFY_TIMEOUT must be a number, got {timeout_raw!r}") from None

        return cls(
            cache_dir=env.get("FLOWCI_CACHE_DIR", DEFAULT_CACHE_DIR),
            artifact_dir=env.get("FLOWCI_ARTIFACT_DIR", DEFAULT_ARTIFACT_DIR),
            workers=max(1, workers),
            compare_ref=env.get("FLOWCI_COMPARE_REF", "origin/main"),
            secrets_file=env.get("FLOWCI_SECRETS_FILE") or None,
            notify_timeout=notify_timeout,
        )
