import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _getenv_int_map(name: str) -> dict[str, int]:
    raw = _getenv(name)
    if raw is None:
        return {}
    out: dict[str, int] = {}
    for part in raw.split(","):
        key, sep, value = part.partition(":")
        key = key.strip().lower()
        if not sep or not key:
            continue
        try:
            out[key] = int(value.strip())
        except ValueError:
            continue
    return out


GENERATION_KINDS = ("text_to_image", "image_to_image", "text_to_video", "image_to_video")


class LimiterSettings:
    def __init__(
        self,
        name: str,
        *,
        reservoir: int,
        refresh_interval_s: float,
        max_concurrent: int,
        min_time_ms: int,
        max_retries: int,
    ) -> None:
        prefix = f"RATE_LIMIT_{name.upper()}"
        self.name = name
        self.reservoir = max(1, _getenv_int(f"{prefix}_RESERVOIR", reservoir))
        self.refresh_interval_s = max(0.001, _getenv_float(f"{prefix}_REFRESH_S", refresh_interval_s))
        self.max_concurrent = max(1, _getenv_int(f"{prefix}_MAX_CONCURRENT", max_concurrent))
        self.min_time_s = max(0, _getenv_int(f"{prefix}_MIN_TIME_MS", min_time_ms)) / 1000.0
        self.max_retries = max(0, _getenv_int(f"{prefix}_MAX_RETRIES", max_retries))
        self.backoff_base_s = _getenv_float("RATE_LIMIT_BACKOFF_BASE_S", 1.0)
        self.backoff_cap_s = _getenv_float("RATE_LIMIT_BACKOFF_CAP_S", 30.0)


class ProviderSettings:
    def __init__(self, kind: str) -> None:
        prefix = kind.upper()
        self.kind = kind
        self.api_key = _getenv(f"{prefix}_API_KEY")
        self.api_url = _getenv(f"{prefix}_API_URL")
        self.timeout_s = _getenv_float(f"{prefix}_TIMEOUT_S", 60.0)

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_url)


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./sql_app.db") or "sqlite:///./sql_app.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()

        self.providers: dict[str, ProviderSettings] = {kind: ProviderSettings(kind) for kind in GENERATION_KINDS}
        self.poll_max_attempts = max(1, _getenv_int("POLL_MAX_ATTEMPTS", 40))
        self.poll_interval_s = max(0.0, _getenv_int("POLL_INTERVAL_MS", 6000) / 1000.0)

        self.limiters: dict[str, LimiterSettings] = {
            "image": LimiterSettings(
                "image", reservoir=450, refresh_interval_s=60.0, max_concurrent=100, min_time_ms=133, max_retries=5
            ),
            "video": LimiterSettings(
                "video", reservoir=55, refresh_interval_s=60.0, max_concurrent=100, min_time_ms=1090, max_retries=5
            ),
            "poll": LimiterSettings(
                "poll", reservoir=1000, refresh_interval_s=60.0, max_concurrent=200, min_time_ms=60, max_retries=3
            ),
        }

        self.aws_region = _getenv("AWS_REGION", "us-east-1") or "us-east-1"
        self.aws_access_key_id = _getenv("AWS_ACCESS_KEY_ID")
        self.aws_secret_access_key = _getenv("AWS_SECRET_ACCESS_KEY")
        self.s3_bucket_name = _getenv("AWS_S3_BUCKET_NAME") or _getenv("S3_BUCKET_NAME")
        self.s3_endpoint_url = _getenv("S3_ENDPOINT_URL")
        self.artifact_download_timeout_s = _getenv_float("ARTIFACT_DOWNLOAD_TIMEOUT_S", 120.0)
        self.artifact_max_bytes = max(1, _getenv_int("ARTIFACT_MAX_BYTES", 512 * 1024 * 1024))
        self.signed_url_ttl_s = max(1, _getenv_int("SIGNED_URL_TTL_S", 86400))

        self.stripe_webhook_secret = _getenv("STRIPE_WEBHOOK_SECRET")
        self.plan_credits = _getenv_int_map("PLAN_CREDITS")
        self.upgrade_bonus_expiry_days = max(1, _getenv_int("UPGRADE_BONUS_EXPIRY_DAYS", 30))

        self.credit_cost_overrides: dict[str, int] = {}
        for kind in GENERATION_KINDS:
            raw = _getenv(f"CREDIT_COST_{kind.upper()}")
            if raw is not None:
                try:
                    self.credit_cost_overrides[kind] = max(0, int(raw))
                except ValueError:
                    continue

        self.expiration_sweep_enabled = _getenv_bool("EXPIRATION_SWEEP_ENABLED", default=True)
        self.expiration_sweep_hour = _getenv_int("EXPIRATION_SWEEP_HOUR", 0)
        self.expiration_sweep_minute = _getenv_int("EXPIRATION_SWEEP_MINUTE", 10)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def missing_provider_config(self) -> list[str]:
        return [kind for kind, cfg in self.providers.items() if not cfg.configured]

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:5173", "http://localhost:8000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins


settings = Settings()
