"""
Configuration settings for dealmail.

Uses dataclasses for configuration. Values come from an optional YAML file,
then environment variables (a local .env is loaded first), then CLI flags.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, Optional, Any

import yaml
from dotenv import find_dotenv, load_dotenv

from ..core.errors import FilesystemError, ValidationError
from ..core.jmap_client import FASTMAIL_SESSION_URL

logger = logging.getLogger(__name__)


@dataclass
class JmapConfig:
    """JMAP mail provider configuration."""
    username: Optional[str] = None
    password: Optional[str] = None  # API token, sent as bearer credential
    session_url: str = FASTMAIL_SESSION_URL
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass
class VisionConfig:
    """Gemini Vision API configuration for deal extraction."""
    api_key: Optional[str] = None
    model_name: str = "gemini-2.0-flash"
    temperature: float = 0.2
    max_output_tokens: int = 2048
    max_retries: int = 3


@dataclass
class ScreenshotConfig:
    """Screenshot generation configuration."""
    viewport_width: int = 1200
    viewport_height: int = 800
    timeout_ms: int = 30000


@dataclass
class RunSettings:
    """Per-run behaviour."""
    concurrency: int = 4
    deadline_seconds: Optional[float] = None


@dataclass
class PipelineConfig:
    """Main pipeline configuration."""
    jmap: JmapConfig = field(default_factory=JmapConfig)
    vision: VisionConfig = field(default_factory=VisionConfig)
    screenshot: ScreenshotConfig = field(default_factory=ScreenshotConfig)
    run: RunSettings = field(default_factory=RunSettings)


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load YAML overrides.

    Args:
        config_path: Path to a YAML file. If None, uses DEALMAIL_CONFIG when set.

    Returns:
        Mapping of section name to settings (empty when no file is configured).

    Raises:
        FilesystemError: if the file is missing or is not valid YAML
    """
    config_path = config_path or os.getenv('DEALMAIL_CONFIG')
    if not config_path:
        return {}

    path = Path(config_path).expanduser()
    if not path.exists():
        raise FilesystemError(f"Config file not found: {path}", path=str(path))

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise FilesystemError(f"Failed to load config file {path}", cause=e, path=str(path)) from e

    if not isinstance(config, dict):
        raise FilesystemError(f"Config file must contain a mapping: {path}", path=str(path))

    logger.info(f"Loaded configuration from {path}")
    return config


def _apply_section(target: Any, values: Optional[Dict[str, Any]], section: str):
    for key, value in (values or {}).items():
        if not hasattr(target, key):
            logger.warning(f"Ignoring unknown setting {section}.{key}")
            continue
        setattr(target, key, value)


def _env(name: str, current: Any, cast=str) -> Any:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return current
    try:
        return cast(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid value for {name}: {raw!r}", cause=e, variable=name) from e


def get_pipeline_config(config_path: Optional[str] = None) -> PipelineConfig:
    """
    Create pipeline configuration from a YAML file and environment variables.

    Environment variables:
        FASTMAIL_USERNAME / FASTMAIL_PASSWORD: JMAP credentials
        GEMINI_API_KEY: Gemini API key
        JMAP_SESSION_URL, JMAP_TIMEOUT_SECONDS, JMAP_MAX_RETRIES
        GEMINI_MODEL_NAME, GEMINI_MAX_RETRIES
        SCREENSHOT_VIEWPORT_WIDTH, SCREENSHOT_VIEWPORT_HEIGHT, SCREENSHOT_TIMEOUT_MS
        DEALMAIL_CONCURRENCY
    """
    load_dotenv(find_dotenv(usecwd=True))

    config = PipelineConfig()
    overrides = load_config_file(config_path)
    _apply_section(config.jmap, overrides.get('jmap'), 'jmap')
    _apply_section(config.vision, overrides.get('vision'), 'vision')
    _apply_section(config.screenshot, overrides.get('screenshot'), 'screenshot')
    _apply_section(config.run, overrides.get('run'), 'run')

    jmap = config.jmap
    jmap.username = _env('FASTMAIL_USERNAME', jmap.username)
    jmap.password = _env('FASTMAIL_PASSWORD', jmap.password)
    jmap.session_url = _env('JMAP_SESSION_URL', jmap.session_url)
    jmap.timeout_seconds = _env('JMAP_TIMEOUT_SECONDS', jmap.timeout_seconds, float)
    jmap.max_retries = _env('JMAP_MAX_RETRIES', jmap.max_retries, int)

    vision = config.vision
    vision.api_key = _env('GEMINI_API_KEY', vision.api_key)
    vision.model_name = _env('GEMINI_MODEL_NAME', vision.model_name)
    vision.max_retries = _env('GEMINI_MAX_RETRIES', vision.max_retries, int)

    screenshot = config.screenshot
    screenshot.viewport_width = _env('SCREENSHOT_VIEWPORT_WIDTH', screenshot.viewport_width, int)
    screenshot.viewport_height = _env('SCREENSHOT_VIEWPORT_HEIGHT', screenshot.viewport_height, int)
    screenshot.timeout_ms = _env('SCREENSHOT_TIMEOUT_MS', screenshot.timeout_ms, int)

    config.run.concurrency = _env('DEALMAIL_CONCURRENCY', config.run.concurrency, int)

    return config
