import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "AGENTCORE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class AppSettings(BaseModel):
    # Model provider (OpenAI-compatible chat completions)
    provider_base_url: str = "http://127.0.0.1:1234/v1"
    provider_api_key: Optional[str] = None
    default_model: str = "qwen/qwen3-vl-8b"
    max_output_tokens: int = 8192
    provider_timeout_s: float = 60.0

    database_path: str = "agentcore.db"
    host: str = "0.0.0.0"
    port: int = 8000

    # Tools
    file_root: str = "workspace"
    tool_timeout_s: float = 30.0
    sandbox_timeout_s: float = 10.0
    sandbox_max_concurrency: int = 4
    sandbox_max_output_chars: int = 20000

    # Runs
    max_tool_steps: int = 5

    # Personas
    persona_match_threshold: float = 0.1
    personas_dir: Optional[str] = None

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("provider_api_key"):
            data["provider_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "provider_base_url": os.getenv("PROVIDER_BASE_URL"),
        "provider_api_key": os.getenv("PROVIDER_API_KEY"),
        "default_model": os.getenv("DEFAULT_MODEL"),
        "max_output_tokens": os.getenv("MAX_OUTPUT_TOKENS"),
        "provider_timeout_s": os.getenv("PROVIDER_TIMEOUT_S"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "file_root": os.getenv("FILE_ROOT"),
        "tool_timeout_s": os.getenv("TOOL_TIMEOUT_S"),
        "sandbox_timeout_s": os.getenv("SANDBOX_TIMEOUT_S"),
        "sandbox_max_concurrency": os.getenv("SANDBOX_MAX_CONCURRENCY"),
        "sandbox_max_output_chars": os.getenv("SANDBOX_MAX_OUTPUT_CHARS"),
        "max_tool_steps": os.getenv("MAX_TOOL_STEPS"),
        "persona_match_threshold": os.getenv("PERSONA_MATCH_THRESHOLD"),
        "personas_dir": os.getenv("PERSONAS_DIR"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("max_output_tokens", "port", "sandbox_max_concurrency", "sandbox_max_output_chars", "max_tool_steps"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in ("provider_timeout_s", "tool_timeout_s", "sandbox_timeout_s", "persona_match_threshold"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
        if not isinstance(file_data, dict):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("provider_api_key") and env_data.get("provider_api_key"):
        merged["provider_api_key"] = env_data["provider_api_key"]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
