from pathlib import Path

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from slotdeploy.errors import ConfigError
from slotdeploy.slots import Slot

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    APP_NAME: str = "my-app"
    BASE_DIR: Path = Path("/opt/apps/my-app")
    APP_PORT: int = 3000
    STAGING_PORT: int = 3001
    KEEP_RELEASES: int = 3

    HEALTH_CHECK_PATH: str = "/api/health"
    HEALTH_CHECK_TIMEOUT: int = 30
    HEALTH_CHECK_INTERVAL: float = 1.0
    HEALTH_CHECK_EXPECTED_STATUS: int = 200
    HEALTH_REQUEST_TIMEOUT: float = 5.0
    DRAIN_SECONDS: float = 10
    STOP_FAILED_TARGET: bool = True

    ENV_FILE: Path | None = None
    SUPERVISOR: str = "pm2"
    NODE_BIN: str = "node"
    MAX_MEMORY_RESTART: str = "500M"

    NGINX_CONFIG_PATH: Path | None = None
    NGINX_TEST_COMMAND: str = "nginx -t"
    NGINX_RELOAD_COMMAND: str = "nginx -s reload"
    PROXY_TEMPLATE: Path | None = None
    STATIC_SUBDIR: str = ".next/static"
    CACHE_MAX_AGE: int = 31536000

    MIN_FREE_SPACE_GB: float = 3
    CLEANUP_COMMANDS: list[str] = [
        "npm cache clean --force",
        "yarn cache clean",
        "pnpm store prune",
    ]
    COMMAND_TIMEOUT: int = 30

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Path | None = None
    METRICS_TEXTFILE: Path | None = None

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    @field_validator("APP_PORT", "STAGING_PORT")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("must be between 1 and 65535")
        return v

    @field_validator("KEEP_RELEASES", "HEALTH_CHECK_TIMEOUT", "COMMAND_TIMEOUT")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("HEALTH_CHECK_INTERVAL", "HEALTH_REQUEST_TIMEOUT")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    @field_validator("DRAIN_SECONDS", "MIN_FREE_SPACE_GB", "CACHE_MAX_AGE")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("HEALTH_CHECK_PATH")
    @classmethod
    def _absolute_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("must start with '/'")
        return v

    @field_validator("HEALTH_CHECK_EXPECTED_STATUS")
    @classmethod
    def _http_status(cls, v: int) -> int:
        if not 100 <= v <= 599:
            raise ValueError("must be an HTTP status code (100-599)")
        return v

    @field_validator("SUPERVISOR")
    @classmethod
    def _known_supervisor(cls, v: str) -> str:
        v = v.lower()
        if v not in ("pm2", "local"):
            raise ValueError("must be 'pm2' or 'local'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def _known_level(cls, v: str) -> str:
        v = v.upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(LOG_LEVELS)}")
        return v

    @field_validator("APP_NAME")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def _fill_derived(self) -> "Settings":
        if self.APP_PORT == self.STAGING_PORT:
            raise ValueError("APP_PORT and STAGING_PORT must differ")
        # Symlink targets are written from these paths; relative ones would dangle.
        self.BASE_DIR = self.BASE_DIR.expanduser().resolve()
        if self.ENV_FILE is None:
            self.ENV_FILE = self.shared_dir / ".env"
        if self.NGINX_CONFIG_PATH is None:
            self.NGINX_CONFIG_PATH = Path("/etc/nginx/conf.d") / f"{self.APP_NAME}.conf"
        if self.LOG_FILE is None:
            self.LOG_FILE = self.logs_dir / "deploy.log"
        return self

    # ── Derived layout ────────────────────────────────────────────

    @property
    def releases_dir(self) -> Path:
        return self.BASE_DIR / "releases"

    @property
    def shared_dir(self) -> Path:
        return self.BASE_DIR / "shared"

    @property
    def slots_dir(self) -> Path:
        return self.BASE_DIR / "slots"

    @property
    def live_pointer_path(self) -> Path:
        return self.BASE_DIR / "current"

    @property
    def logs_dir(self) -> Path:
        return self.BASE_DIR / "logs"

    @property
    def run_dir(self) -> Path:
        return self.BASE_DIR / "run"

    @property
    def temp_dir(self) -> Path:
        return self.BASE_DIR / "temp"

    def port_for(self, slot: Slot) -> int:
        return self.APP_PORT if slot is Slot.A else self.STAGING_PORT


def load_settings(env_file: str | Path | None = ".env", **overrides) -> Settings:
    """Build and validate settings once.

    Every invalid field is collected into a single ConfigError instead of
    surfacing the first failure when the value is used.
    """
    try:
        return Settings(_env_file=env_file, **overrides)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            field = ".".join(str(part) for part in err["loc"]) or "settings"
            msg = err["msg"].removeprefix("Value error, ")
            problems.append(f"{field}: {msg}")
        raise ConfigError(problems) from e
