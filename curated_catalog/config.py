import os
import logging
from pathlib import Path

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent

# Upper bound on in-flight remote calls during a refresh pass
MAX_REFRESH_CONCURRENCY = 4


def load_config() -> dict:
    """Load configuration from .env and config.yaml. Env vars take precedence."""
    load_dotenv(PROJECT_ROOT / ".env")

    config_path = PROJECT_ROOT / "config.yaml"
    if config_path.exists():
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
    else:
        config = {}

    # Resolve database path relative to project root
    db_rel = os.environ.get("CATALOG_DB_PATH") or config.get("database", {}).get(
        "path", "data/catalog.db"
    )
    config["db_path"] = str(PROJECT_ROOT / db_rel)

    # Resolve log file path
    log_rel = config.get("logging", {}).get("file")
    if log_rel:
        config["log_file"] = str(PROJECT_ROOT / log_rel)
    else:
        config["log_file"] = None

    config["log_level"] = config.get("logging", {}).get("level", "INFO")

    api_key = os.environ.get("YOUTUBE_API_KEY")
    if api_key:
        config["youtube"] = {**(config.get("youtube") or {}), "api_key": api_key}

    return config


def get_youtube_config(config: dict) -> dict:
    """Extract YouTube Data API settings with defaults."""
    yt = config.get("youtube") or {}
    return {
        "api_key": yt.get("api_key") or None,
        "timeout_seconds": float(yt.get("timeout_seconds", 10.0)),
        "max_retries": yt.get("max_retries", 2),
        "retry_base_delay": yt.get("retry_base_delay", 1.0),
        "requests_per_minute": yt.get("requests_per_minute", 120),
    }


def get_catalog_config(config: dict) -> dict:
    """Extract pagination and local-library settings with defaults."""
    cat = config.get("catalog") or {}
    thumb_rel = cat.get("thumbnail_cache_dir", "data/thumbnails")
    return {
        "page_size": cat.get("page_size", 50),
        "max_pages": cat.get("max_pages", 100),
        "default_max_depth": cat.get("default_max_depth", 2),
        "thumbnail_cache_dir": str(PROJECT_ROOT / thumb_rel),
    }


def get_refresh_config(config: dict) -> dict:
    """Extract background refresh settings with defaults."""
    rc = config.get("refresh") or {}
    concurrency = rc.get("max_concurrency", MAX_REFRESH_CONCURRENCY)
    clamped = max(1, min(MAX_REFRESH_CONCURRENCY, int(concurrency)))
    if clamped != concurrency:
        logger.warning(
            f"refresh.max_concurrency={concurrency} out of range, using {clamped}"
        )
    return {
        "ttl_hours": rc.get("ttl_hours", 6),
        "max_concurrency": clamped,
        "start_delay_seconds": rc.get("start_delay_seconds", 2.0),
    }
