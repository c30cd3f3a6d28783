"""
Configuration Module

Reads TaskPilot settings from the environment once at import time. Every
value has a development default so the backend starts with no setup.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


def _env_flag(name: str, default: str = "1") -> bool:
    return os.environ.get(name, default).strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class Settings:
    data_path: Path
    log_file: Optional[Path]
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    llm_provider: str = "openai"
    llm_base_url: str = "https://api.openai.com"
    llm_model: str = "gpt-4o"
    llm_api_key: str = ""
    llm_timeout: float = 120.0
    default_plan: str = "pro"
    watch_data: bool = True
    automations_enabled: bool = True
    automation_cooldown_minutes: int = 5
    webhook_timeout: float = 10.0
    host: str = "0.0.0.0"
    port: int = 8000


def load_settings() -> Settings:
    """Build settings from environment variables."""
    data_path = Path(os.environ.get("TASKPILOT_DATA_PATH", "./taskpilot_data")).resolve()
    log_file_env = os.environ.get("TASKPILOT_LOG_FILE")
    if log_file_env == "":
        log_file = None
    else:
        log_file = Path(log_file_env) if log_file_env else data_path / "backend.log"

    origins = [o.strip() for o in os.environ.get("TASKPILOT_CORS_ORIGINS", "*").split(",") if o.strip()]

    provider = os.environ.get("LLM_PROVIDER", "openai").strip().lower()
    default_base = "http://localhost:11434" if provider == "ollama" else "https://api.openai.com"

    return Settings(
        data_path=data_path,
        log_file=log_file,
        log_level=os.environ.get("TASKPILOT_LOG_LEVEL", "INFO").upper(),
        cors_origins=origins or ["*"],
        llm_provider=provider,
        llm_base_url=os.environ.get("LLM_BASE_URL", default_base).rstrip("/"),
        llm_model=os.environ.get("LLM_MODEL", "llama3" if provider == "ollama" else "gpt-4o"),
        llm_api_key=os.environ.get("OPENAI_API_KEY") or os.environ.get("LLM_API_KEY", ""),
        llm_timeout=float(os.environ.get("LLM_TIMEOUT", "120")),
        default_plan=os.environ.get("TASKPILOT_DEFAULT_PLAN", "pro").lower(),
        watch_data=_env_flag("TASKPILOT_WATCH_DATA"),
        automations_enabled=_env_flag("TASKPILOT_AUTOMATIONS_ENABLED"),
        automation_cooldown_minutes=int(os.environ.get("TASKPILOT_AUTOMATION_COOLDOWN", "5")),
        webhook_timeout=float(os.environ.get("TASKPILOT_WEBHOOK_TIMEOUT", "10")),
        host=os.environ.get("TASKPILOT_HOST", "0.0.0.0"),
        port=int(os.environ.get("TASKPILOT_PORT", "8000")),
    )


def setup_logging(settings: Settings) -> None:
    """Configure root logging with a file and a console handler."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        try:
            settings.log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.insert(0, logging.FileHandler(settings.log_file, encoding="utf-8"))
        except OSError as e:
            logging.getLogger(__name__).warning(f"Cannot open log file {settings.log_file}: {e}")

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
