import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .utils import parse_duration_to_seconds

# Tunables stored in the `config` table; editable with `dlqueue config set`.
DEFAULT_CONFIG = {
    "max_retries": "3",
    "backoff_base": "2",
    "poll_interval_seconds": "1",
    "job_timeout_seconds": "3600",
    "cancel_grace_seconds": "10",
    "store_retry_seconds": "5",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

INTEGER_KEYS = {"max_retries", "backoff_base"}


def normalize_config_value(key: str, value: str) -> str:
    """Validate a tunable and return the string that gets stored."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in INTEGER_KEYS:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be an integer.")
        if number < 0:
            raise ValueError(f"{key} must be >= 0.")
        return str(number)
    seconds = float(parse_duration_to_seconds(value))
    return str(int(seconds)) if seconds.is_integer() else str(seconds)


@dataclass(frozen=True)
class Tunables:
    max_retries: int = 3
    backoff_base: int = 2
    poll_interval_seconds: float = 1.0
    job_timeout_seconds: float = 3600.0
    cancel_grace_seconds: float = 10.0
    store_retry_seconds: float = 5.0

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, str]) -> "Tunables":
        merged = dict(DEFAULT_CONFIG)
        merged.update({k: v for k, v in cfg.items() if k in ALLOWED_CONFIG_KEYS})
        return cls(
            max_retries=int(merged["max_retries"]),
            backoff_base=int(merged["backoff_base"]),
            poll_interval_seconds=float(merged["poll_interval_seconds"]),
            job_timeout_seconds=float(merged["job_timeout_seconds"]),
            cancel_grace_seconds=float(merged["cancel_grace_seconds"]),
            store_retry_seconds=float(merged["store_retry_seconds"]),
        )


@dataclass(frozen=True)
class Settings:
    """Process-level configuration, read from the environment."""
    db_path: str = "dlqueue.db"
    output_dir: str = "downloads"
    ytdlp_executable: str = "yt-dlp"
    ytdlp_format: str = "bestvideo+bestaudio/best"
    ytdlp_config: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None


def load_settings(env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    if environ is None:
        # .env never overrides variables that are already exported
        load_dotenv(env_file)
        environ = os.environ
    defaults = Settings()
    return Settings(
        db_path=environ.get("DLQUEUE_DB", defaults.db_path),
        output_dir=environ.get("DLQUEUE_OUTPUT_DIR", defaults.output_dir),
        ytdlp_executable=environ.get("DLQUEUE_YTDLP", defaults.ytdlp_executable),
        ytdlp_format=environ.get("DLQUEUE_YTDLP_FORMAT", defaults.ytdlp_format),
        ytdlp_config=environ.get("DLQUEUE_YTDLP_CONFIG") or None,
        log_level=environ.get("DLQUEUE_LOG_LEVEL", defaults.log_level),
        log_file=environ.get("DLQUEUE_LOG_FILE") or None,
    )
