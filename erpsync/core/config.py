from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_ENTITIES = ("products", "customers", "orders")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ERPSYNC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "ERP Sync"
    environment: str = "production"
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    sqlite_busy_timeout_ms: PositiveInt = 5000

    lock_ttl_seconds: PositiveInt = 300
    expected_tick_seconds: PositiveInt = 60
    checkpoint_ttl_seconds: PositiveInt = 86400
    progress_ttl_seconds: PositiveInt = 86400

    stall_threshold_seconds: PositiveInt = 30
    progress_sample_window: PositiveInt = 5

    products_batch_size: PositiveInt = 20
    products_max_batch_size: PositiveInt = 200
    customers_batch_size: PositiveInt = 50
    customers_max_batch_size: PositiveInt = 200
    orders_batch_size: PositiveInt = 50
    orders_max_batch_size: PositiveInt = 100

    history_limit: PositiveInt = 10
    max_history_limit: PositiveInt = 200

    error_retention_days: PositiveInt = 30
    summary_window_days: PositiveInt = 7

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.lock_ttl_seconds <= self.expected_tick_seconds:
            raise ValueError("lock_ttl_seconds must be greater than expected_tick_seconds")

        for entity in SUPPORTED_ENTITIES:
            default = getattr(self, f"{entity}_batch_size")
            maximum = getattr(self, f"{entity}_max_batch_size")
            if default > maximum:
                raise ValueError(f"{entity}_batch_size must be less than or equal to {entity}_max_batch_size")

        if self.progress_sample_window < 2:
            raise ValueError("progress_sample_window must keep at least two samples")

        if self.max_history_limit < self.history_limit:
            raise ValueError("max_history_limit must be greater than or equal to history_limit")

        self.log_level = self.log_level.upper().strip()
        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "erpsync.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    def default_batch_size(self, entity: str) -> int:
        return int(getattr(self, f"{entity}_batch_size"))

    def max_batch_size(self, entity: str) -> int:
        return int(getattr(self, f"{entity}_max_batch_size"))

    def clamp_batch_size(self, entity: str, requested: int | None) -> int:
        if requested is None:
            return self.default_batch_size(entity)
        return max(1, min(self.max_batch_size(entity), int(requested)))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
