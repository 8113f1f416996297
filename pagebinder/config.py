"""
Configuration and user settings for the conversion pipeline.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .extraction import DEFAULT_ANALYSIS_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4.1-mini-2025-04-14"
DEFAULT_SETTINGS_PATH = Path.home() / ".config" / "pagebinder" / "settings.json"
API_KEY_ENV = "PAGEBINDER_API_KEY"


@dataclass
class PipelineConfig:
    """Configuration for the conversion pipeline.

    Attributes:
        api_url: Chat-completions endpoint of the extraction service
        model: Vision model name
        max_tokens: Response token limit per page

        # Retry policy
        max_attempts: Extraction attempts per page
        retry_delay: Seconds between a failed attempt and the next
        temperature_step: Temperature increase per retry
        page_delay: Seconds to pause after each page (rate-limit courtesy)
        request_timeout: Seconds before an extraction request is abandoned

        # Output
        output_dir: Directory finished EPUBs are delivered to
        language: Book language code for EPUB metadata

        # Server
        allowed_origins: Browser origins besides localhost that may call
            the job server (a capturing extension's origin, for example)
    """

    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    max_tokens: int = 5000

    max_attempts: int = 3
    retry_delay: float = 2.0
    temperature_step: float = 0.2
    page_delay: float = 1.0
    request_timeout: float = 120.0

    output_dir: Path = field(default_factory=lambda: Path("./output"))
    language: str = "en"

    allowed_origins: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate and convert paths."""
        self.output_dir = Path(self.output_dir)
        self.allowed_origins = tuple(o.rstrip("/") for o in self.allowed_origins)

        if not self.api_url:
            raise ValueError("api_url cannot be empty")

        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be >= 1, got {self.max_tokens}")

        for name in ("retry_delay", "page_delay", "temperature_step"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")

        if self.request_timeout <= 0:
            raise ValueError(f"request_timeout must be > 0, got {self.request_timeout}")

        if "*" in self.allowed_origins:
            raise ValueError("allowed_origins must list explicit origins, not '*'")

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Build a config from PAGEBINDER_* environment variables."""
        env = {
            "api_url": os.getenv("PAGEBINDER_API_URL"),
            "model": os.getenv("PAGEBINDER_MODEL"),
            "output_dir": os.getenv("PAGEBINDER_OUTPUT_DIR"),
            "page_delay": os.getenv("PAGEBINDER_PAGE_DELAY"),
            "retry_delay": os.getenv("PAGEBINDER_RETRY_DELAY"),
        }
        values = {k: v for k, v in env.items() if v}
        for key in ("page_delay", "retry_delay"):
            if key in values:
                values[key] = float(values[key])
        origins = os.getenv("PAGEBINDER_ALLOWED_ORIGINS")
        if origins:
            values["allowed_origins"] = tuple(o.strip() for o in origins.split(",") if o.strip())
        values.update(overrides)
        return cls(**values)


@dataclass
class Settings:
    """User settings read before each job."""

    api_key: str = ""
    analysis_prompt: str = ""

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key.strip())

    @property
    def prompt(self) -> str:
        """Extraction prompt, falling back to the default."""
        return self.analysis_prompt.strip() or DEFAULT_ANALYSIS_PROMPT


class SettingsStore:
    """JSON-file backed settings; the API key may be overridden from the environment."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path else DEFAULT_SETTINGS_PATH

    def load(self, include_env: bool = True) -> Settings:
        settings = Settings()
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                settings = Settings(
                    api_key=str(data.get("api_key", "")),
                    analysis_prompt=str(data.get("analysis_prompt", "")),
                )
            except (ValueError, AttributeError) as e:
                logger.warning(f"Could not read settings from {self.path}: {e}")

        env_key = os.getenv(API_KEY_ENV) if include_env else None
        if env_key:
            settings.api_key = env_key
        return settings

    def save(self, settings: Settings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = asdict(settings)
        data["api_key"] = data["api_key"].strip()
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logger.info(f"Settings saved: {self.path}")
