"""Settings for Tagstash.

Sources, highest precedence first: explicit keyword arguments, ``.env``, the
OS environment, then ``config.toml`` in the working directory.
"""

from pathlib import Path
from typing import Any

import tomllib
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from Tagstash.schemas import MAX_CONTENT_LENGTH

CONFIG_PATH = Path("config.toml")

# (toml section, toml key) -> Settings field
_TOML_FIELDS: dict[tuple[str, str], str] = {
    ("app", "env"): "env",
    ("app", "database_url"): "database_url",
    ("app", "port"): "app_port",
    ("logging", "enabled"): "logging_enabled",
    ("logging", "level"): "logging_level",
    ("logging", "file_path"): "logging_file_path",
    ("logging", "max_bytes"): "logging_max_bytes",
    ("logging", "backup_count"): "logging_backup_count",
    ("import", "chunk_size"): "import_chunk_size",
    ("import", "max_records"): "import_max_records",
    ("import", "max_content_length"): "import_max_content_length",
    ("import", "session_expiry_hours"): "import_session_expiry_hours",
    ("import", "records_per_second_estimate"): "import_records_per_second_estimate",
    ("import", "resumable_list_limit"): "import_resumable_list_limit",
    ("ops", "metrics_endpoint_enabled"): "metrics_endpoint_enabled",
}


def _handler_level(value: Any, overall: str) -> str:
    # Handler levels may be a level name ("DEBUG", "NONE") or a boolean switch
    if isinstance(value, bool):
        return overall if value else "NONE"
    if isinstance(value, str):
        return value.upper()
    return overall


def _toml_settings_source() -> dict[str, Any]:
    """Flatten config.toml sections onto Settings field names."""
    if not CONFIG_PATH.exists():
        return {}
    with CONFIG_PATH.open("rb") as f:
        raw = tomllib.load(f)
    out: dict[str, Any] = {}
    for (section, key), field_name in _TOML_FIELDS.items():
        value = (raw.get(section) or {}).get(key)
        if value is not None:
            out[field_name] = value

    logging_cfg = raw.get("logging") or {}
    overall = str(out.get("logging_level", "INFO")).upper()
    out["logging_console"] = _handler_level(logging_cfg.get("console"), overall)
    out["logging_file"] = _handler_level(logging_cfg.get("to_file"), overall)
    return out


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite+aiosqlite:///./tagstash.sqlite3")
    app_port: int = 18000
    # Reserved for a future signed-session layer; redacted in logs
    app_secret_key: SecretStr | None = None

    # --- Import pipeline ---
    import_chunk_size: int = Field(default=500, gt=0)
    import_max_records: int = Field(default=50_000, gt=0)
    # Bundle validation already caps content at MAX_CONTENT_LENGTH; this can only lower it
    import_max_content_length: int = Field(default=MAX_CONTENT_LENGTH, gt=0, le=MAX_CONTENT_LENGTH)
    import_session_expiry_hours: int = Field(default=24, gt=0)
    import_records_per_second_estimate: int = Field(default=100, gt=0)
    import_resumable_list_limit: int = Field(default=10, gt=0)

    # --- Logging ---
    logging_enabled: bool = True
    logging_level: str = "INFO"
    # Per-handler level names; "NONE" disables the handler
    logging_console: str = "INFO"
    logging_file: str = "INFO"
    logging_file_path: str = "logs/tagstash.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    # --- Ops ---
    metrics_endpoint_enabled: bool = False

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings() -> Settings:
    return Settings()
