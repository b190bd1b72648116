"""Shared wizardflow configuration utilities.

Centralises reading of ~/.wizardflow/configuration.json so that the CLI and
every wizard share one implementation. The file is optional; every helper
falls back to a built-in default.

Example file::

    {
      "llm": {"provider": "anthropic", "model": "claude-haiku-4-5-20251001",
              "max_tokens": 2000, "api_key_env_var": "ANTHROPIC_API_KEY"},
      "wizard": {"max_retries": 5, "wait_seconds": 3}
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "anthropic/claude-haiku-4-5-20251001"
DEFAULT_MAX_TOKENS = 1000
DEFAULT_REPAIR_MAX_TOKENS = 10000
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_RETRIES = 3
DEFAULT_WAIT_SECONDS = 10.0
DEFAULT_LOG_DIR = ".wizardflow"

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

WIZARDFLOW_CONFIG_FILE = Path.home() / ".wizardflow" / "configuration.json"


def get_config_path() -> Path:
    """Return the configuration path, honouring WIZARDFLOW_CONFIG."""
    override = os.environ.get("WIZARDFLOW_CONFIG")
    return Path(override) if override else WIZARDFLOW_CONFIG_FILE


def get_wizardflow_config() -> dict[str, Any]:
    """Load the configuration file, returning {} if missing or unreadable."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the preferred model string (e.g. 'anthropic/claude-haiku-4-5-20251001')."""
    llm = get_wizardflow_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_wizardflow_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_wizardflow_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def _wizard_setting(key: str, default: Any) -> Any:
    return get_wizardflow_config().get("wizard", {}).get(key, default)


def _default_log_to_file() -> bool:
    # File logging is a development aid; production deployments log to stdout only
    if os.getenv("ENV", "development").lower() == "production":
        return False
    return bool(_wizard_setting("log_to_file", True))


# ---------------------------------------------------------------------------
# WizardConfig – per-wizard runtime settings
# ---------------------------------------------------------------------------


@dataclass
class WizardConfig:
    """Runtime settings for one wizard, defaulting to the configuration file."""

    model: str = field(default_factory=get_preferred_model)
    max_tokens: int = field(default_factory=get_max_tokens)
    repair_max_tokens: int = field(
        default_factory=lambda: _wizard_setting("repair_max_tokens", DEFAULT_REPAIR_MAX_TOKENS)
    )
    temperature: float = DEFAULT_TEMPERATURE
    max_retries: int = field(
        default_factory=lambda: _wizard_setting("max_retries", DEFAULT_MAX_RETRIES)
    )
    wait_seconds: float = field(
        default_factory=lambda: float(_wizard_setting("wait_seconds", DEFAULT_WAIT_SECONDS))
    )
    log_dir: str = field(default_factory=lambda: _wizard_setting("log_dir", DEFAULT_LOG_DIR))
    log_to_file: bool = field(default_factory=_default_log_to_file)
    stream_structured: bool = True
    api_key: str | None = field(default_factory=get_api_key)
