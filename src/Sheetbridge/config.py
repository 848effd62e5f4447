"""Settings loader for Sheetbridge."""

from pathlib import Path
from typing import Any

import tomllib
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AdapterConfig(BaseModel):
    """Static adapter registration read from ``[[adapters]]`` in config.toml."""

    id: str
    name: str = ""
    version: str = ""
    base_url: str
    bmrt_versions: list[str] = Field(default_factory=lambda: ["1.0"])
    supported_extensions: list[str] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=lambda: ["detect", "import", "export"])


def _toml_settings_source() -> dict[str, Any]:
    """Load settings from config.toml with keys mapped to Settings fields.

    This source has LOWER priority than env/.env so those can override TOML.
    """
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)

    imp = t.get("import", {}) or {}
    sec = t.get("security", {}) or {}
    out: dict[str, Any] = {
        "env": t.get("app", {}).get("env", "dev"),
        "app_port": t.get("app", {}).get("port", 18000),
        # Rate limits are requests per window, per user
        "rate_limit_detect": imp.get("rate_limit_detect", 10),
        "rate_limit_import": imp.get("rate_limit_import", 5),
        "rate_limit_export": imp.get("rate_limit_export", 20),
        "rate_limit_window_seconds": imp.get("rate_limit_window_seconds", 60.0),
        "max_upload_bytes": imp.get("max_upload_bytes", 10 * 1024 * 1024),
        "max_json_depth": imp.get("max_json_depth", 100),
        "detect_confidence_threshold": imp.get("confidence_threshold", 0.7),
        "detect_cache_ttl_seconds": imp.get("cache_ttl_seconds", 300.0),
        "detect_cache_max_entries": imp.get("cache_max_entries", 1024),
        "health_check_interval_seconds": imp.get("health_check_interval_seconds", 30.0),
        "health_check_timeout_seconds": imp.get("health_check_timeout_seconds", 5.0),
        "detect_timeout_seconds": imp.get("detect_timeout_seconds", 2.0),
        "transfer_timeout_seconds": imp.get("transfer_timeout_seconds", 30.0),
        "default_game_system": imp.get("default_game_system", "midgard"),
        "adapter_allowed_hosts": sec.get("allowed_hosts", []),
        "ssrf_protection": sec.get("ssrf_protection", True),
        "ssrf_resolve_dns": sec.get("resolve_dns", False),
        # Logging config
        "logging_enabled": t.get("logging", {}).get("enabled", True),
        "logging_level": t.get("logging", {}).get("level", "INFO"),
        "logging_console": None,
        "logging_file": None,
        "logging_file_path": t.get("logging", {}).get("file_path", "logs/sheetbridge.jsonl"),
        "logging_max_bytes": t.get("logging", {}).get("max_bytes", 5_000_000),
        "logging_backup_count": t.get("logging", {}).get("backup_count", 5),
    }

    db_cfg = t.get("database", {}) or {}
    if db_cfg.get("url"):
        out["database_url"] = db_cfg["url"]

    adapters = t.get("adapters", []) or []
    if adapters:
        out["adapters"] = adapters

    log_cfg = t.get("logging", {}) or {}
    # Per-handler levels may be strings or legacy booleans
    console_val = log_cfg.get("console", None)
    file_val = log_cfg.get("to_file", None)
    overall = out["logging_level"]

    def _norm_level(v, default):
        if isinstance(v, str):
            return v.upper()
        if isinstance(v, bool):
            return default if v else "NONE"
        return default

    out["logging_console"] = _norm_level(console_val, overall)
    out["logging_file"] = _norm_level(file_val, overall)

    ops_cfg = t.get("ops", {}) or {}
    out["metrics_endpoint_enabled"] = ops_cfg.get("metrics_endpoint_enabled", False)

    return out


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite+aiosqlite:///./sheetbridge.sqlite3")
    app_port: int = 18000

    # --- Import pipeline ---
    rate_limit_detect: int = 10
    rate_limit_import: int = 5
    rate_limit_export: int = 20
    rate_limit_window_seconds: float = 60.0
    max_upload_bytes: int = 10 * 1024 * 1024
    max_json_depth: int = 100
    detect_confidence_threshold: float = 0.7
    detect_cache_ttl_seconds: float = 300.0
    detect_cache_max_entries: int = 1024
    health_check_interval_seconds: float = 30.0
    health_check_timeout_seconds: float = 5.0
    detect_timeout_seconds: float = 2.0
    transfer_timeout_seconds: float = 30.0
    default_game_system: str = "midgard"

    # --- Adapter network policy ---
    adapter_allowed_hosts: list[str] = Field(default_factory=list)
    ssrf_protection: bool = True
    ssrf_resolve_dns: bool = False
    adapters: list[AdapterConfig] = Field(default_factory=list)

    # --- Logging ---
    logging_enabled: bool = True
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "INFO"
    logging_file_path: str = "logs/sheetbridge.jsonl"
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
        # Precedence (highest to lowest):
        # 1) init_settings (explicit overrides in code/tests)
        # 2) dotenv (.env in cwd)
        # 3) env_settings (OS env)
        # 4) TOML (config.toml)
        # 5) file_secret_settings
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings() -> Settings:
    return Settings()
