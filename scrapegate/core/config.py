import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Telemetry counters backend
    TELEMETRY_STORE: str = "memory"  # memory | sql | redis
    TELEMETRY_KEY_PREFIX: str = "telemetry:cost"

    # Configuration provider caches (kill switch, observability gate, canary)
    CONFIG_CACHE_TTL_SECONDS: float = 30.0

    # Enforcement audit
    ENFORCEMENT_AUDIT_ENABLED: bool = True
    ENFORCEMENT_AUDIT_MODE: str = "advisory"  # advisory | enforced

    # Cost model override table (JSON). Unset = built-in table.
    COST_MODEL_PATH: Optional[str] = None

    # Tier change effects
    TIER_DOWNGRADE_COOLDOWN_HOURS: float = 6.0

    # Anti-bot cooldowns
    ANTIBOT_RETRY_BASE_SECONDS: float = 1.0
    ANTIBOT_RETRY_MAX_SECONDS: float = 16.0
    ANTIBOT_BLOCK_COOLDOWN_MINUTES: float = 30.0

    # Demo mode (tightens marketplace rate shaping)
    DEMO_ALLOWED_SOURCES: str = "facebook"  # comma-separated
    DEMO_RATE_MAX_CONCURRENCY: int = 1
    DEMO_RATE_JOBS_PER_MINUTE: int = 2
    DEMO_RATE_ERROR_THRESHOLD: int = 5
    DEMO_RATE_COOLDOWN_SECONDS: int = 300

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    Required keys depend on the selected telemetry store. In strict mode raise
    RuntimeError; otherwise emit warnings only. Secrets are not logged, only
    missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("scrapegate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    store = (getattr(cfg, "TELEMETRY_STORE", "memory") or "memory").lower()
    if store not in {"memory", "sql", "redis"}:
        message = f"Unsupported TELEMETRY_STORE: {store}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    required_keys = []
    if store == "sql" or getattr(cfg, "ENFORCEMENT_AUDIT_ENABLED", False):
        required_keys.append("DATABASE_URL")
    if store == "redis":
        required_keys.append("REDIS_URL")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    mode = getattr(cfg, "ENFORCEMENT_AUDIT_MODE", "advisory")
    if mode not in {"advisory", "enforced"}:
        message = f"Unsupported ENFORCEMENT_AUDIT_MODE: {mode}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
