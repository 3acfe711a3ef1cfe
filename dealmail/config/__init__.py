"""Configuration module for dealmail."""

from .settings import (
    get_pipeline_config,
    load_config_file,
    JmapConfig,
    VisionConfig,
    ScreenshotConfig,
    RunSettings,
    PipelineConfig,
)

__all__ = [
    "get_pipeline_config",
    "load_config_file",
    "JmapConfig",
    "VisionConfig",
    "ScreenshotConfig",
    "RunSettings",
    "PipelineConfig",
]
