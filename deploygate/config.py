import json
import os
from typing import Dict, List

from dotenv import load_dotenv

# Load params from .env file
load_dotenv()

# Data storage
DB_PATH = os.getenv("DEPLOYGATE_DB_PATH", os.getenv("DB_PATH", "data/deploygate.db"))

# Job agent channel (empty => log-only channel)
JOB_AGENT_WEBHOOK_URL = os.getenv("DEPLOYGATE_JOB_AGENT_WEBHOOK_URL", "")
JOB_AGENT_TIMEOUT_SECONDS = 5

# Dispatch retry budget for transient storage conflicts
DISPATCH_MAX_ATTEMPTS_DEFAULT = 3


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = str(raw).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def get_storage_backend_name() -> str:
    return str(os.getenv("DEPLOYGATE_STORAGE_BACKEND") or "sqlite").strip().lower()


def get_dispatch_max_attempts() -> int:
    return _env_int("DEPLOYGATE_DISPATCH_MAX_ATTEMPTS", DISPATCH_MAX_ATTEMPTS_DEFAULT)


def is_scheduler_enabled() -> bool:
    """
    Controls the background dispatch tick.
    Disabled by default; deployments run it from a dedicated process.
    """
    return _env_bool("DEPLOYGATE_SCHEDULER_ENABLED", False)


def get_scheduler_interval_seconds() -> int:
    return _env_int("DEPLOYGATE_SCHEDULER_INTERVAL_SECONDS", 60)


def get_role_members() -> Dict[str, List[str]]:
    """
    Static role membership used when no authorization service is wired in.
    Format: {"<role id>": ["<user id>", ...]}
    """
    raw = os.getenv("DEPLOYGATE_ROLE_MEMBERS", "")
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    members: Dict[str, List[str]] = {}
    for role, users in parsed.items():
        if isinstance(users, list):
            members[str(role)] = [str(u).strip() for u in users if str(u).strip()]
    return members
