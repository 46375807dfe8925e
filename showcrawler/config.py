import logging
import sys

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    log_level: str = "INFO"

    # Structured extraction (OpenAI-compatible chat completions API)
    llm_base_url: str = "https://api.deepseek.com/v1"
    llm_model: str = "deepseek-chat"
    llm_api_key: str = ""
    llm_timeout_s: float = 25.0
    llm_max_tokens: int = 2000

    # Worker pool
    max_workers: int = 5
    task_timeout_s: float = 100.0
    worker_stagger_s: float = 0.1

    # Browser
    headless: bool = True

    # Content and discovery limits
    content_min_chars: int = 200
    discovery_payload_limit: int = 8000
    discovery_large_threshold: int = 50000
    fallback_url_limit: int = 100

    # Pre-flight HTTP check before discovery launches a browser
    connectivity_probe: bool = True
    connectivity_timeout_s: float = 10.0

    model_config = {"env_file": ".env"}


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Send package logs to stdout with a compact single-line format."""
    root = logging.getLogger("showcrawler")
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())
