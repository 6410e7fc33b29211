"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.
"""
from __future__ import annotations

import shlex
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings ≥2.7 calls json.loads() on complex-typed fields
    (e.g. List[str]) before field_validators run.  A plain comma-separated
    value like ``pool.example.com,api.example.com`` is not valid JSON and
    raises SettingsError before the parse_domains validator can handle it.
    This mixin catches that ValueError and returns the raw string so the
    field_validator receives it and can split on commas as intended.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Domain management ──────────────────────────────────────────────────
    MANAGED_DOMAINS: List[str] = []
    WARNING_THRESHOLD_DAYS: int = 30
    CRITICAL_THRESHOLD_DAYS: int = 7

    # ── Storage ────────────────────────────────────────────────────────────
    CERT_STORE_PATH: str = "./certificate"
    BACKUP_PATH: str = "./backup"
    BACKUP_RETENTION_DAYS: int = 7
    BACKUP_INTERVAL_DAYS: int = 7

    # ── CA client (certbot) ────────────────────────────────────────────────
    CERTBOT_BIN: str = "certbot"
    CERTBOT_LIVE_DIR: str = "/etc/letsencrypt/live"
    CA_CLIENT_TIMEOUT: int = 300

    # ── Service controller ─────────────────────────────────────────────────
    SERVICE_MANAGER: Literal["auto", "pm2", "systemd", "command", "none"] = "auto"
    PM2_PROCESS_NAME: str = "pool-server"
    PM2_CONFIG_PATH: str = "/opt/worldland-pool/pm2.json"
    SYSTEMD_UNIT: str = "worldland-pool"
    SERVICE_RESTART_COMMAND: str = ""    # Only consulted when SERVICE_MANAGER="command"
    SERVICE_RESTART_TIMEOUT: int = 60
    SKIP_RESTART_WHEN_HEALTHY: bool = False

    # ── Health probe ───────────────────────────────────────────────────────
    PROBE_HOST: str = "localhost"
    PROBE_PORT: int = 3443
    PROBE_TIMEOUT: float = 10.0
    HEALTH_PATH: str = "/api/pool/health"

    # ── Notifications ──────────────────────────────────────────────────────
    NOTIFICATION_EMAIL: str = ""         # empty disables e-mail
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = ""
    SMTP_STARTTLS: bool = False
    SLACK_WEBHOOK_URL: str = ""          # empty disables Slack
    DISCORD_WEBHOOK_URL: str = ""        # empty disables Discord
    NOTIFY_STATE_PATH: str = "./state/notifications.json"
    ATTEMPT_LOG_PATH: str = "./state/renewal-attempts.jsonl"

    # ── Scheduling ─────────────────────────────────────────────────────────
    DAEMON_INTERVAL_SECONDS: int = 3600
    PROBE_INTERVAL_SECONDS: int = 300
    MAX_WORKERS: int = 4

    # ── Logging ────────────────────────────────────────────────────────────
    LOG_FILE: str = ""
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Carry over a runtime `_env_file=` override from the default source.
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(
                settings_cls,
                env_file=dotenv_settings.env_file,  # type: ignore[attr-defined]
                env_file_encoding=dotenv_settings.env_file_encoding,  # type: ignore[attr-defined]
            ),
            file_secret_settings,
        )

    @field_validator("MANAGED_DOMAINS", mode="before")
    @classmethod
    def parse_domains(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [d.strip() for d in v.split(",") if d.strip()]
        return v  # type: ignore[return-value]

    @field_validator(
        "PROBE_TIMEOUT",
        "CA_CLIENT_TIMEOUT",
        "SERVICE_RESTART_TIMEOUT",
        "DAEMON_INTERVAL_SECONDS",
        "PROBE_INTERVAL_SECONDS",
        "BACKUP_RETENTION_DAYS",
        "BACKUP_INTERVAL_DAYS",
        "MAX_WORKERS",
    )
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        if not 0 < self.CRITICAL_THRESHOLD_DAYS < self.WARNING_THRESHOLD_DAYS:
            raise ValueError(
                "thresholds must satisfy 0 < CRITICAL_THRESHOLD_DAYS < WARNING_THRESHOLD_DAYS"
            )
        return self

    @model_validator(mode="after")
    def validate_restart_command(self) -> "Settings":
        if self.SERVICE_MANAGER == "command" and not self.SERVICE_RESTART_COMMAND.strip():
            raise ValueError(
                "SERVICE_RESTART_COMMAND must be set when SERVICE_MANAGER='command'"
            )
        return self

    @property
    def restart_argv(self) -> List[str]:
        return shlex.split(self.SERVICE_RESTART_COMMAND)


# Module-level singleton; main.py reads it when wiring components.
settings = Settings()
