"""Service settings.

Settings are read from environment variables, loading a `.env` file at the
repository root first if one exists:

    VALUE_RESOLVER_DB_PATH              SQLite database file
    VALUE_RESOLVER_PROMOTION_THRESHOLD  distinct confirmers needed to promote
    VALUE_RESOLVER_RESOLVE_TIMEOUT_S    deadline for one resolve call
    VALUE_RESOLVER_REFRESH_TIMEOUT_S    deadline for a source query
    VALUE_RESOLVER_MAX_PREFILTER_TERMS  cap on terms scored per store/query
    VALUE_RESOLVER_IDENTITY_HEADER      header carrying the caller identity
    VALUE_RESOLVER_LOG_JSON             "true" for JSON logs
    VALUE_RESOLVER_LOG_LEVEL            logging level name

Source connections are declared as VALUE_SOURCE_<NAME>=sqlite:///path.db
"""

import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

env_path = Path(__file__).resolve().parents[1] / ".env"
if env_path.exists():
    load_dotenv(env_path)


DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "value_resolver.db"

SOURCE_ENV_PREFIX = "VALUE_SOURCE_"


class ResolverSettings(BaseModel):
    """Runtime settings for the value resolution service."""
    db_path: Path = Field(default=DEFAULT_DB_PATH)
    promotion_threshold: int = Field(default=3, ge=1)
    resolve_timeout_s: float = Field(default=30.0, gt=0)
    refresh_timeout_s: float = Field(default=300.0, gt=0)
    max_prefilter_terms: int = Field(default=5000, ge=1)
    identity_header: str = Field(default="X-Caller-Identity")
    log_json: bool = False
    log_level: str = "INFO"
    sources: Dict[str, str] = Field(default_factory=dict, description="Connection name → URL")


def _env_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings(environ: Optional[Dict[str, str]] = None) -> ResolverSettings:
    """Build settings from environment variables.

    Args:
        environ: Mapping to read instead of os.environ (tests)

    Returns:
        ResolverSettings with defaults for anything not set
    """
    env = os.environ if environ is None else environ
    values = {}

    if env.get("VALUE_RESOLVER_DB_PATH"):
        values["db_path"] = Path(env["VALUE_RESOLVER_DB_PATH"])
    if env.get("VALUE_RESOLVER_PROMOTION_THRESHOLD"):
        values["promotion_threshold"] = int(env["VALUE_RESOLVER_PROMOTION_THRESHOLD"])
    if env.get("VALUE_RESOLVER_RESOLVE_TIMEOUT_S"):
        values["resolve_timeout_s"] = float(env["VALUE_RESOLVER_RESOLVE_TIMEOUT_S"])
    if env.get("VALUE_RESOLVER_REFRESH_TIMEOUT_S"):
        values["refresh_timeout_s"] = float(env["VALUE_RESOLVER_REFRESH_TIMEOUT_S"])
    if env.get("VALUE_RESOLVER_MAX_PREFILTER_TERMS"):
        values["max_prefilter_terms"] = int(env["VALUE_RESOLVER_MAX_PREFILTER_TERMS"])
    if env.get("VALUE_RESOLVER_IDENTITY_HEADER"):
        values["identity_header"] = env["VALUE_RESOLVER_IDENTITY_HEADER"]
    if env.get("VALUE_RESOLVER_LOG_LEVEL"):
        values["log_level"] = env["VALUE_RESOLVER_LOG_LEVEL"].upper()
    values["log_json"] = _env_bool(env.get("VALUE_RESOLVER_LOG_JSON"))

    values["sources"] = {
        key[len(SOURCE_ENV_PREFIX):].lower(): url
        for key, url in env.items()
        if key.startswith(SOURCE_ENV_PREFIX) and url
    }

    return ResolverSettings(**values)
