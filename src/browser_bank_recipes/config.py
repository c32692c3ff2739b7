"""Configuration management using Pydantic settings with optional file persistence."""

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Paths ---

APP_NAME = "browser-bank-recipes"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/browser-bank-recipes)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


CONFIG_FILE = get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        text = CONFIG_FILE.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        return json.loads(text)
    except Exception:
        return {}


def save_config_file(config_data: dict[str, Any]) -> None:
    """Save settings to the JSON config file."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_FILE.write_text(json.dumps(config_data, indent=2), encoding="utf-8")


class BrowserSettings(BaseSettings):
    """Browser configuration."""

    model_config = SettingsConfigDict(env_prefix="BANK_RECIPES_BROWSER_")

    headless: bool = Field(default=False, description="Recording always needs a visible window; playback may run headless")
    user_data_dir: Optional[str] = Field(default=None, description="Persistent profile so bank cookies survive between runs")
    cdp_url: Optional[str] = Field(default=None, description="Attach to an already running Chrome instead of launching one")


class RecorderSettings(BaseSettings):
    """Interaction recorder configuration."""

    model_config = SettingsConfigDict(env_prefix="BANK_RECIPES_RECORDER_")

    debounce_seconds: float = Field(default=2.0, description="Window in which a repeated identical input commit is dropped")
    label_radius_px: int = Field(default=200, description="Search radius for a label placed near a form control")
    store_sensitive_values: bool = Field(default=True, description="Save password-like values; when off they are asked for at playback")


FailurePolicy = Literal["ask", "skip", "abort"]


class PlaybackSettings(BaseSettings):
    """Playback engine configuration."""

    model_config = SettingsConfigDict(env_prefix="BANK_RECIPES_PLAYBACK_")

    load_timeout: float = Field(default=10.0, description="Max seconds to wait for the page to stop loading")
    ready_timeout: float = Field(default=5.0, description="Max seconds to wait for document.readyState == 'complete'")
    settle_delay: float = Field(default=2.0, description="Pause after each step for async re-rendering")
    poll_interval: float = Field(default=0.1)
    navigation_check_timeout: float = Field(default=1.5, description="How long a failed step watches for a URL change")
    initial_load_delay: float = Field(default=2.0, description="Pause after opening the recipe's start page")
    highlight_ms: int = Field(default=500)
    require_coordinates: bool = Field(default=True, description="Fail steps that carry no recorded coordinates")
    on_failure: FailurePolicy = Field(default="ask", description="What to do when a step cannot be replayed")
    between_recipes_delay: float = Field(default=2.0, description="Pause between recipes in a run-all pass")


class CleanupSettings(BaseSettings):
    """Optional LLM cleanup of extracted rows (Ollama)."""

    model_config = SettingsConfigDict(env_prefix="BANK_RECIPES_CLEANUP_")

    enabled: bool = Field(default=False)
    base_url: str = Field(default="http://localhost:11434")
    model: str = Field(default="llama3.2")
    batch_size: int = Field(default=20)
    timeout: float = Field(default=60.0)


class StoreSettings(BaseSettings):
    """Recipe store configuration."""

    model_config = SettingsConfigDict(env_prefix="BANK_RECIPES_STORE_")

    directory: Optional[str] = Field(default=None, description="Directory containing recipe YAML files (default: ~/.config/bank-recipes)")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="BANK_RECIPES_LOGGING_")

    level: str = Field(default="INFO")
    json_output: bool = Field(default=False, description="Emit JSON log lines instead of console text")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="BANK_RECIPES_", extra="ignore")

    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    recorder: RecorderSettings = Field(default_factory=RecorderSettings)
    playback: PlaybackSettings = Field(default_factory=PlaybackSettings)
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    # Pydantic will overlay env vars on top
    return AppSettings(**file_data)


settings = _load_settings()


def set_config_values(assignments: list[str]) -> dict[str, Any]:
    """Apply ``section.key=value`` assignments to the config file.

    Only the keys already in the file plus the assigned ones are written, so
    environment overrides never leak into the file.

    Raises:
        ValueError: On a malformed assignment, an unknown key or an invalid value
    """
    data = load_config_file()
    for assignment in assignments:
        name, sep, value = assignment.partition("=")
        section, dot, key = name.strip().partition(".")
        if not sep or not dot:
            raise ValueError(f"Expected section.key=value, got {assignment!r}")
        model = AppSettings.model_fields.get(section)
        if model is None or key not in model.annotation.model_fields:
            raise ValueError(f"Unknown setting: {section}.{key}")
        data.setdefault(section, {})[key] = value.strip()

    validated = AppSettings(**data)
    # Store typed values (e.g. "1.5" -> 1.5) rather than the raw strings
    for section, values in data.items():
        current = getattr(validated, section, None)
        if current is not None:
            data[section] = {key: getattr(current, key, raw) for key, raw in values.items()}
    save_config_file(data)
    return data
