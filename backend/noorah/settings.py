from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    port: int = Field(default=8080, validation_alias="PORT")

    # CORS / mobile + web clients
    frontend_urls: str | None = Field(default=None, validation_alias="FRONTEND_URLS")

    # AWS / data
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    # Points boto3 at DynamoDB Local in development.
    ddb_endpoint_url: str | None = Field(default=None, validation_alias="DDB_ENDPOINT_URL")

    # Auth (HS256 bearer tokens minted by the accounts service)
    jwt_secret: str | None = Field(default=None, validation_alias="JWT_SECRET")
    jwt_issuer: str | None = Field(default=None, validation_alias="JWT_ISSUER")

    # Encryption key for MFA secrets at rest.
    token_enc_key: str | None = Field(default=None, validation_alias="TOKEN_ENC_KEY")

    # MFA (TOTP, RFC 6238)
    mfa_issuer: str = Field(default="NannyRadar", validation_alias="MFA_ISSUER")
    mfa_digits: int = Field(default=6, ge=6, le=8, validation_alias="MFA_DIGITS")
    mfa_period_seconds: int = Field(default=30, ge=15, le=120, validation_alias="MFA_PERIOD_SECONDS")
    mfa_window_steps: int = Field(default=1, ge=0, le=3, validation_alias="MFA_WINDOW_STEPS")
    mfa_secret_bytes: int = Field(default=20, ge=16, le=64, validation_alias="MFA_SECRET_BYTES")
    mfa_backup_code_count: int = Field(default=10, ge=1, le=20, validation_alias="MFA_BACKUP_CODE_COUNT")
    mfa_lockout_max_attempts: int = Field(default=5, ge=1, validation_alias="MFA_LOCKOUT_MAX_ATTEMPTS")
    mfa_lockout_base_seconds: int = Field(default=900, ge=1, validation_alias="MFA_LOCKOUT_BASE_SECONDS")
    mfa_lockout_max_seconds: int = Field(default=86400, ge=1, validation_alias="MFA_LOCKOUT_MAX_SECONDS")
    # Per client+user limit on the code-checking endpoints.
    mfa_rate_limit_rpm: int = Field(default=20, validation_alias="MFA_RATE_LIMIT_RPM")

    # Guardian Mode defaults (overridable per session)
    guardian_default_check_in_minutes: int = Field(
        default=30, validation_alias="GUARDIAN_DEFAULT_CHECK_IN_MINUTES"
    )
    guardian_default_escalation_delay_minutes: int = Field(
        default=5, validation_alias="GUARDIAN_DEFAULT_ESCALATION_DELAY_MINUTES"
    )
    guardian_default_geofence_radius_m: int = Field(
        default=100, validation_alias="GUARDIAN_DEFAULT_GEOFENCE_RADIUS_M"
    )
    sos_escalation_minutes: int = Field(default=5, validation_alias="SOS_ESCALATION_MINUTES")
    guardian_tick_seconds: int = Field(default=30, validation_alias="GUARDIAN_TICK_SECONDS")

    # Notification channels
    expo_push_url: str = Field(
        default="https://exp.host/--/api/v2/push/send", validation_alias="EXPO_PUSH_URL"
    )
    expo_access_token: str | None = Field(default=None, validation_alias="EXPO_ACCESS_TOKEN")
    ses_from_email: str | None = Field(default=None, validation_alias="SES_FROM_EMAIL")
    slack_enabled: bool = Field(default=False, validation_alias="SLACK_ENABLED")
    slack_bot_token: str | None = Field(default=None, validation_alias="SLACK_BOT_TOKEN")
    slack_support_channel: str | None = Field(default=None, validation_alias="SLACK_SUPPORT_CHANNEL")

    # Observability (OpenTelemetry)
    otel_enabled: bool = Field(default=False, validation_alias="OTEL_ENABLED")
    otel_service_name: str | None = Field(
        default="noorah-safety-backend", validation_alias="OTEL_SERVICE_NAME"
    )
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Development and test runs may use partial config; production may not.
        """
        if not self.is_production:
            return

        missing: list[str] = []
        if not self.jwt_secret:
            missing.append("JWT_SECRET")
        if not self.ddb_table_name:
            missing.append("DDB_TABLE_NAME")
        # MFA secrets must never be encrypted with a fallback key.
        if not self.token_enc_key:
            missing.append("TOKEN_ENC_KEY")
        if bool(self.slack_enabled):
            if not self.slack_bot_token:
                missing.append("SLACK_BOT_TOKEN")
            if not self.slack_support_channel:
                missing.append("SLACK_SUPPORT_CHANNEL")

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A redacted representation safe for structured logs / diagnostics.
        """
        def _has(v: object) -> bool:
            return v is not None and str(v).strip() != ""

        return {
            "environment": self.normalized_environment,
            "port": self.port,
            "aws": {
                "aws_region": self.aws_region,
                "ddb_table_name": self.ddb_table_name,
                "ddb_endpoint_url": self.ddb_endpoint_url,
            },
            "auth": {
                "jwt_secret_configured": _has(self.jwt_secret),
                "jwt_issuer": self.jwt_issuer,
                "token_enc_key_configured": _has(self.token_enc_key),
            },
            "mfa": {
                "issuer": self.mfa_issuer,
                "digits": self.mfa_digits,
                "period_seconds": self.mfa_period_seconds,
                "window_steps": self.mfa_window_steps,
                "lockout_max_attempts": self.mfa_lockout_max_attempts,
            },
            "guardian": {
                "check_in_minutes": self.guardian_default_check_in_minutes,
                "escalation_delay_minutes": self.guardian_default_escalation_delay_minutes,
                "sos_escalation_minutes": self.sos_escalation_minutes,
            },
            "notifications": {
                "expo_push_url": self.expo_push_url,
                "expo_access_token_configured": _has(self.expo_access_token),
                "ses_from_email": self.ses_from_email if _has(self.ses_from_email) else None,
                "slack_enabled": bool(self.slack_enabled),
                "slack_bot_token_configured": _has(self.slack_bot_token),
                "slack_support_channel": self.slack_support_channel
                if _has(self.slack_support_channel)
                else None,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s


# Shared instance; tests monkeypatch its attributes.
settings = get_settings()
