from __future__ import annotations
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_REGION = "us-east-1"
REDACTED = "(sensitive)"

_secret_values: set = set()
_secret_lock = threading.Lock()


def get_allowed_origins():
    raw = os.getenv("CORS_ALLOW_ORIGINS", "*")
    if raw.strip() == "*":
        return ["*"]
    return [x.strip() for x in raw.split(",") if x.strip()]


def _win_path(p: str) -> str:
    # Convert Git Bash style /c/... to C:\...
    if p and p.startswith("/c/"):
        return "C:\\" + p[3:].replace("/", "\\")
    return p


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class EngineSettings:
    state_dir: Path
    provider: str = "memory"
    provider_url: Optional[str] = None
    provider_token: Optional[str] = None
    secrets_url: Optional[str] = None
    concurrency: int = 4
    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_cap: float = 8.0
    ready_timeout: float = 300.0
    poll_interval: float = 2.0
    region: str = DEFAULT_REGION

    @classmethod
    def from_env(cls, state_dir: Optional[str] = None) -> "EngineSettings":
        """
        Read settings from the process environment (.env is loaded by the
        entry points via load_dotenv()). An explicit state_dir wins over
        LABSTACK_STATE_DIR.
        """
        state_raw = state_dir or os.getenv("LABSTACK_STATE_DIR", str(Path.cwd() / "labstack-state"))
        settings = cls(
            state_dir=Path(_win_path(state_raw)).resolve(),
            provider=os.getenv("LABSTACK_PROVIDER", "memory").strip().lower(),
            provider_url=os.getenv("LABSTACK_PROVIDER_URL") or None,
            provider_token=os.getenv("LABSTACK_PROVIDER_TOKEN") or None,
            secrets_url=os.getenv("LABSTACK_SECRETS_URL") or None,
            concurrency=_env_int("LABSTACK_CONCURRENCY", 4),
            max_attempts=_env_int("LABSTACK_MAX_ATTEMPTS", 5),
            backoff_base=_env_float("LABSTACK_BACKOFF_BASE", 0.5),
            backoff_cap=_env_float("LABSTACK_BACKOFF_CAP", 8.0),
            ready_timeout=_env_float("LABSTACK_READY_TIMEOUT", 300.0),
            poll_interval=_env_float("LABSTACK_POLL_INTERVAL", 2.0),
            region=os.getenv("AWS_REGION", DEFAULT_REGION),
        )
        if settings.concurrency < 1:
            raise ValueError("LABSTACK_CONCURRENCY must be at least 1")
        if settings.max_attempts < 1:
            raise ValueError("LABSTACK_MAX_ATTEMPTS must be at least 1")
        return settings


def init_orchestrator_env(state_dir: Optional[str] = None) -> EngineSettings:
    """
    Resolve settings and make sure the local state directory exists, so
    /health can report it before the first plan.
    """
    settings = EngineSettings.from_env(state_dir)
    settings.state_dir.mkdir(parents=True, exist_ok=True)
    os.environ["LABSTACK_STATE_DIR"] = str(settings.state_dir)
    return settings


# -------------------- Logging --------------------

def register_secret_value(value: str) -> None:
    """Remember a secret value so log records containing it get masked."""
    if not value:
        return
    with _secret_lock:
        _secret_values.add(value)


def redact_text(text: str) -> str:
    with _secret_lock:
        values = sorted(_secret_values, key=len, reverse=True)
    for v in values:
        if v in text:
            text = text.replace(v, REDACTED)
    return text


class RedactingFilter(logging.Filter):
    """Masks known secret values in the final formatted message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact_text(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def configure_logging(verbose: bool = False) -> None:
    root = logging.getLogger("provisioner")
    level = logging.DEBUG if verbose else logging.INFO
    root.setLevel(level)
    if any(isinstance(f, RedactingFilter) for h in root.handlers for f in h.filters):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    handler.addFilter(RedactingFilter())
    root.addHandler(handler)
