import os
import log
from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env file into environment
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    def __init__(self):
        self.valkey_host = os.getenv("VALKEY_HOST", "localhost")
        self.valkey_port = int(os.getenv("VALKEY_PORT", 6379))
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./experiment_session.db")
        self.log_level = os.getenv("LOG_LEVEL", default="INFO")
        self.log_file = os.getenv("LOG_FILE", "experiment_session.log") or None  # empty disables the file handler
        self.valid_tokens = [t.strip() for t in os.getenv("VALID_TOKENS", "").split(",") if t.strip()]
        self.celery_broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1" )
        self.celery_backend_url = os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/1" )
        self.celery_task_always_eager = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)

        # client-side analytics defaults
        self.analytics_endpoint = os.getenv("ANALYTICS_ENDPOINT", "http://localhost:8000/api/analytics")
        self.analytics_api_token = os.getenv("ANALYTICS_API_TOKEN")
        self.analytics_batch_size = int(os.getenv("ANALYTICS_BATCH_SIZE", 10))
        self.analytics_flush_interval = float(os.getenv("ANALYTICS_FLUSH_INTERVAL", 5.0))
        self.analytics_debug = _env_bool("ANALYTICS_DEBUG", False)
        self.analytics_offline_storage = _env_bool("ANALYTICS_OFFLINE_STORAGE", True)
        self.analytics_tracking_id = os.getenv("ANALYTICS_TRACKING_ID")
        self.analytics_heat_mapping = _env_bool("ANALYTICS_HEAT_MAPPING", False)
        self.ab_testing_enabled = _env_bool("AB_TESTING_ENABLED", True)

        # Call setup_logging when the application starts
        log.setup_logging(self.log_level, self.log_file)

    def __repr__(self):
        return f"<Settings host={self.valkey_host} port={self.valkey_port} loglevel={self.log_level}, broker_url:{self.celery_broker_url}, analytics_endpoint:{self.analytics_endpoint}>"

config = Config()


class AnalyticsConfig(BaseModel):
    """Per-session analytics options. Defaults come from the environment."""
    api_endpoint: str = Field(default_factory=lambda: config.analytics_endpoint)
    api_token: str | None = Field(default_factory=lambda: config.analytics_api_token)
    batch_size: int = Field(default_factory=lambda: config.analytics_batch_size, ge=1)
    flush_interval: float = Field(default_factory=lambda: config.analytics_flush_interval, ge=0, description="Seconds between periodic flushes, 0 disables the timer.")
    enable_debug_mode: bool = Field(default_factory=lambda: config.analytics_debug)
    enable_offline_storage: bool = Field(default_factory=lambda: config.analytics_offline_storage)
    tracking_id: str | None = Field(default_factory=lambda: config.analytics_tracking_id)
    enable_heat_mapping: bool = Field(default_factory=lambda: config.analytics_heat_mapping)
    enable_ab_testing: bool = Field(default_factory=lambda: config.ab_testing_enabled)
    flush_on_teardown: bool = True
    session_prefix: str = "session"
