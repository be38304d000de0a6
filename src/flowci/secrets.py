# secrets.py
from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

import yaml

from .errors import WorkflowError

SECRET_ENV_PREFIX = "FLOWCI_SECRET_"
MASK = "***"
MIN_MASK_LENGTH = 3

# Host variables a job may inherit. Everything else is dropped so jobs run
# against the environment the workflow declares, not the developer's shell.
ENV_ALLOWLIST = (
    "PATH",
    "HOME",
    "LANG",
    "LC_ALL",
    "TMPDIR",
    "USER",
    "SHELL",
    "SYSTEMROOT",
)


class SecretMasker:
    """Replaces registered secret values with *** in any text."""

    def __init__(self, values: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._values: set[str] = set()
        for v in values:
            self.add(v)

    def add(self, value: str | None) -> None:
        if not value:
            return
        with self._lock:
            # multi-line secrets (keys, certs) get masked line by line too
            for part in [value, *value.splitlines()]:
                part = part.strip()
                if len(part) >= MIN_MASK_LENGTH:
                    self._values.add(part)

    def mask(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            values = sorted(self._values, key=len, reverse=True)
        for v in values:
            if v in text:
                text = text.replace(v, MASK)
        return text

    def __len__(self) -> int:
        return len(self._values)


def _parse_dotenv(text: str, source: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        if "=" not in line:
            raise WorkflowError(f"line {lineno}: expected KEY=VALUE", source=source)
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        out[key.strip()] = value
    return out


def parse_assignments(items: Iterable[str]) -> Dict[str, str]:
    """Parse ["KEY=VALUE", ...] as given on the command line."""
    out: Dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise ValueError(f"Expected KEY=VALUE, got {item!r}")
        key, value = item.split("=", 1)
        out[key.strip()] = value
    return out


class SecretStore:
    """
    Secret values available to a run.

    Precedence (highest first): explicit values, secrets file,
    FLOWCI_SECRET_* environment variables.
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})
        self.masker = SecretMasker(self._values.values())

    @classmethod
    def load(
        cls,
        *,
        secrets_file: str | Path | None = None,
        explicit: Optional[Mapping[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SecretStore":
        env = os.environ if environ is None else environ
        values: Dict[str, str] = {
            k[len(SECRET_ENV_PREFIX):]: v
            for k, v in env.items()
            if k.startswith(SECRET_ENV_PREFIX) and len(k) > len(SECRET_ENV_PREFIX)
        }
        if secrets_file:
            values.update(cls._read_file(Path(secrets_file)))
        if explicit:
            values.update(explicit)
        return cls(values)

    @staticmethod
    def _read_file(path: Path) -> Dict[str, str]:
        if not path.exists():
            raise WorkflowError("secrets file not found", source=str(path))
        text = path.read_text(encoding="utf-8")
        if path.suffix in (".yml", ".yaml"):
            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError as e:
                raise WorkflowError(f"invalid YAML: {e}", source=str(path)) from e
            if not isinstance(data, dict):
                raise WorkflowError("secrets file must be a mapping", source=str(path))
            return {str(k): "" if v is None else str(v) for k, v in data.items()}
        return _parse_dotenv(text, str(path))

    def names(self) -> List[str]:
        return sorted(self._values)

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def for_job(self, declared: Iterable[str]) -> Dict[str, str]:
        """Only the secrets a job declares; undeclared names are invisible to it."""
        return {n: self._values[n] for n in declared if n in self._values}

    def missing(self, declared: Iterable[str]) -> List[str]:
        return [n for n in declared if n not in self._values]


# ----------------------------------------------------------------------
# Environment scoping
# ----------------------------------------------------------------------

def host_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ if environ is None else environ
    return {k: env[k] for k in ENV_ALLOWLIST if k in env}


def runner_env(
    *,
    workflow: str,
    job: str,
    run_id: str,
    workspace: str | Path,
    event_name: str,
    sha: str | None = None,
    ref: str | None = None,
) -> Dict[str, str]:
    return {
        "CI": "true",
        "FLOWCI": "true",
        "FLOWCI_WORKFLOW": workflow,
        "FLOWCI_JOB": job,
        "FLOWCI_RUN_ID": run_id,
        "FLOWCI_WORKSPACE": str(workspace),
        "FLOWCI_SHA": sha or "",
        "FLOWCI_REF": ref or "",
        "FLOWCI_EVENT_NAME": event_name,
    }


def layer_env(base: Mapping[str, str], *scopes: Mapping[str, str], render=None) -> Dict[str, str]:
    """
    Merge env scopes, lowest precedence first.

    `render(value, env_so_far)` is applied to every value of a scope so a
    job can reference `${{ env.X }}` from the workflow scope, a step from
    the job scope, and so on.
    """
    env: Dict[str, str] = dict(base)
    for scope in scopes:
        snapshot = dict(env)
        for k, v in scope.items():
            env[k] = render(v, snapshot) if render is not None else str(v)
    return env
