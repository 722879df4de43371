from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    BOT_TOKEN: str = ""
    ADMIN_ID: int = 0
    ADMIN_PASSWORD: str = ""

    # Хранилище балансов
    STORE_BACKEND: str = Field(default="github")
    GITHUB_TOKEN: str = ""
    GITHUB_REPO: str = ""
    GITHUB_BRANCH: str | None = None
    GITHUB_API_BASE: str = "https://api.github.com"
    BALANCE_FILE: str = "balances.js"
    PROMO_MEMBERS_FILE: str = "promo_members.js"
    INTENTS_FILE: str = "promo_intents.json"
    LEDGER_CAS_ATTEMPTS: int = Field(default=3, ge=1, le=10)

    # Одноразовые коды
    REDIS_URL: str | None = None
    PASSCODE_TTL_SECONDS: int = Field(default=300, ge=30)
    PASSCODE_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    PASSCODE_RETENTION_SECONDS: int = Field(default=3600, ge=0)
    PASSCODE_ISSUE_COOLDOWN_SECONDS: int = Field(default=30, ge=0)
    PASSCODE_ENFORCE_PURPOSE: bool = True

    # Цены
    CURRENCY: str = "NGN"
    PREMIUM_COST: int = Field(default=5000, gt=0)
    OWNER_SHARE: int = Field(default=2500, ge=0)
    PROMO_FEE: int = Field(default=1000, gt=0)

    # Курс валют
    RATE_API_URL: str = "https://api.exchangerate-api.com/v4/latest/USD"
    RATE_FALLBACK: float = 1600.0
    RATE_MIN_SANE: float = 100.0
    RATE_CACHE_SECONDS: int = Field(default=300, ge=0)

    # Логи
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Прокси (если нужно)
    HTTP_PROXY_URL: str | None = None

    # HTTP клиенты
    HTTP_TIMEOUT_CONNECT: float = 3.0
    HTTP_TIMEOUT_READ: float = 15.0
    HTTP_TIMEOUT_WRITE: float = 15.0
    HTTP_TIMEOUT_TOTAL: float = 30.0
    HTTP_RETRY_ATTEMPTS: int = 2
    HTTP_RETRY_BACKOFF_INITIAL: float = 0.5
    HTTP_RETRY_BACKOFF_MAX: float = 8.0
    HTTP_RETRY_STATUS_CODES: tuple[int, ...] = (500, 502, 503, 504)
    HTTP_CIRCUIT_BREAKER_MAX_FAILURES: int = 5
    HTTP_CIRCUIT_BREAKER_BASE_DELAY: float = 1.0
    HTTP_CIRCUIT_BREAKER_MAX_DELAY: float = 30.0

    WEB_HOST: str = "0.0.0.0"
    WEB_PORT: int = Field(
        default=3000,
        validation_alias=AliasChoices("WEB_PORT", "PORT"),
    )

    # Фоновые задачи
    NOTIFY_WORKERS: int = Field(default=2, ge=1, le=16)
    NOTIFY_QUEUE_MAX: int = Field(default=500, ge=1)
    RECONCILE_INTERVAL_MINUTES: int = Field(default=10, ge=1)
    PROMO_REFUND_AFTER_MINUTES: int = Field(default=60, ge=1)
    PROMO_REVIEW_AFTER_MINUTES: int = Field(default=30, ge=1)
    PROMO_INTENT_RETENTION_DAYS: int = Field(default=30, ge=1)

    ENVIRONMENT: str = Field(default="local")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("ADMIN_ID", mode="before")
    @classmethod
    def _fix_admin_id(cls, v):
        if v in (None, ""):
            return 0
        return int(v)

    @field_validator("STORE_BACKEND", mode="before")
    @classmethod
    def _normalize_backend(cls, v):
        value = str(v or "github").strip().lower()
        if value not in {"github", "memory"}:
            raise ValueError(f"unsupported STORE_BACKEND: {v}")
        return value

    @model_validator(mode="after")
    def _check_split(self) -> "Settings":
        # владелец группы получает только часть стоимости
        if self.OWNER_SHARE >= self.PREMIUM_COST:
            raise ValueError("OWNER_SHARE must be lower than PREMIUM_COST")
        return self

    @property
    def use_github(self) -> bool:
        return self.STORE_BACKEND == "github"


settings = Settings()
