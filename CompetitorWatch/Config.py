import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


DEFAULT_USER_AGENT = ('Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
                      '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36')


def get_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def get_int(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_float(name: str, default: Optional[float] = None) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


class Settings(BaseModel):
    fetch_delay_s: float = 2.0
    max_new_per_crawl: int = 20
    request_timeout_s: int = 30
    content_max_chars: int = 10000
    raw_content_max_chars: int = 50000
    user_agent: str = DEFAULT_USER_AGENT
    db_path: str = 'competitor_watch.db'
    ollama_base_url: str = 'http://localhost:11434'
    ollama_model: str = 'qwen3:8b'
    ollama_timeout_s: int = 120
    ollama_retries: int = 2
    log_level: str = 'INFO'


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    """Reads settings from the environment, after merging a .env file if one is found."""
    load_dotenv(dotenv_path)
    defaults = Settings()
    return Settings(
        fetch_delay_s=get_float('CW_FETCH_DELAY_S', defaults.fetch_delay_s),
        max_new_per_crawl=get_int('CW_MAX_NEW_PER_CRAWL', defaults.max_new_per_crawl),
        request_timeout_s=get_int('CW_REQUEST_TIMEOUT_S', defaults.request_timeout_s),
        content_max_chars=get_int('CW_CONTENT_MAX_CHARS', defaults.content_max_chars),
        raw_content_max_chars=get_int('CW_RAW_CONTENT_MAX_CHARS', defaults.raw_content_max_chars),
        user_agent=get_str('CW_USER_AGENT', defaults.user_agent),
        db_path=get_str('CW_DB_PATH', defaults.db_path),
        ollama_base_url=get_str('OLLAMA_BASE_URL', defaults.ollama_base_url).rstrip('/'),
        ollama_model=get_str('OLLAMA_MODEL', defaults.ollama_model),
        ollama_timeout_s=get_int('OLLAMA_TIMEOUT_S', defaults.ollama_timeout_s),
        ollama_retries=get_int('OLLAMA_RETRIES', defaults.ollama_retries),
        log_level=get_str('CW_LOG_LEVEL', defaults.log_level).upper(),
    )
