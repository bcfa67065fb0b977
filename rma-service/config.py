"""
Configuration
=============

Overview
--------
Two layers of configuration feed the service:

1) `prompts/settings.toml` holds behavior: model governance, sampling
   parameters, prompts, timeouts, limits and the Freshdesk status table.
2) Environment variables hold secrets and deployment values. They are loaded
   from a local `.env` file when present.

Runtime Contract
----------------
    load_config() -> dict        parse and validate settings.toml
    cached_config() -> dict      same, loaded once per process
    Settings.from_env()          snapshot of the environment
    validate_environment()       fail fast on missing required variables
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
import os                                                # Environment variables and path handling
from dataclasses import dataclass                        # Immutable settings container
from functools import lru_cache                          # Load the TOML file once per process
from typing import Optional, List                        # Type hints for clarity and safety

# Third-party libraries
import tomli                                             # TOML parser for configuration and prompts
from dotenv import load_dotenv                           # Load environment variables

# -----------------------------------------------------------------------------
# Paths
# -----------------------------------------------------------------------------

ROOT = os.path.dirname(__file__)
TOML_PATH = os.path.join(ROOT, "prompts", "settings.toml")

REQUIRED_SECTIONS = ("general", "timeouts", "limits", "teams", "freshdesk", "database", "prompts")

REQUIRED_ENV_VARS = (
    "FRESHDESK_SUBDOMAIN",
    "FRESHDESK_API_KEY",
    "OPENAI_API_KEY",
)

# -----------------------------------------------------------------------------
# TOML loaders
# -----------------------------------------------------------------------------

def load_config(path: str = TOML_PATH) -> dict:
    """
    Load and validate the service configuration from `settings.toml`.

    Contract
    --------
    Required sections: general, timeouts, limits, teams, freshdesk, database,
    prompts. The selected model must be listed in general.chat_models and the
    classifier prompts must be non-empty strings.

    Raises
    ------
    RuntimeError
        If a section or key is missing or holds an invalid value.
    """
    with open(path, "rb") as f:
        cfg = tomli.load(f)

    missing = [s for s in REQUIRED_SECTIONS if s not in cfg]
    if missing:
        raise RuntimeError(f"settings.toml missing required sections: {', '.join(missing)}")

    g = cfg["general"]
    for key in ("chat_models", "model", "temperature", "max_tokens"):
        if key not in g:
            raise RuntimeError(f"settings.toml missing required key general.{key}")

    allowed = g["chat_models"]
    if not isinstance(allowed, list) or g["model"] not in allowed:
        raise RuntimeError(f"general.model must be one of general.chat_models: {allowed}")

    p = cfg["prompts"]
    for key in ("classifier_system", "classifier_user"):
        if key not in p or not isinstance(p[key], str) or not p[key].strip():
            raise RuntimeError(f"settings.toml missing required key prompts.{key}")

    if "status_codes" not in cfg["freshdesk"]:
        raise RuntimeError("settings.toml missing required table freshdesk.status_codes")

    return cfg


@lru_cache(maxsize=1)
def cached_config() -> dict:
    """Return cached configuration loaded once"""
    return load_config()

# -----------------------------------------------------------------------------
# Environment
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Settings:
    """
    Secrets and deployment values read from the environment.

    The Microsoft fields are optional: when any of them is missing the
    service-credential Teams search reports itself as not configured.
    """
    freshdesk_subdomain: str = ""
    freshdesk_api_key: str = ""
    openai_api_key: str = ""
    openai_model: Optional[str] = None
    database_url: Optional[str] = None
    vids_field_key: Optional[str] = None
    microsoft_client_id: Optional[str] = None
    microsoft_client_secret: Optional[str] = None
    microsoft_tenant_id: Optional[str] = None
    teams_search_user_id: Optional[str] = None
    app_env: str = "production"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            freshdesk_subdomain=os.getenv("FRESHDESK_SUBDOMAIN", ""),
            freshdesk_api_key=os.getenv("FRESHDESK_API_KEY", ""),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL") or None,
            database_url=os.getenv("DATABASE_URL") or None,
            vids_field_key=os.getenv("VIDS_FIELD_KEY") or None,
            microsoft_client_id=os.getenv("MICROSOFT_CLIENT_ID") or None,
            microsoft_client_secret=os.getenv("MICROSOFT_CLIENT_SECRET") or None,
            microsoft_tenant_id=os.getenv("MICROSOFT_TENANT_ID") or None,
            teams_search_user_id=os.getenv("TEAMS_SEARCH_USER_ID") or None,
            app_env=os.getenv("APP_ENV", "production").lower(),
        )

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


def missing_environment() -> List[str]:
    """Names of required environment variables that are unset or empty."""
    load_dotenv()
    return [name for name in REQUIRED_ENV_VARS if not os.getenv(name)]


def validate_environment() -> None:
    """Raise RuntimeError listing every missing required environment variable."""
    missing = missing_environment()
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
