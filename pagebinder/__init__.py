"""
pagebinder - Turn photographed book pages into an EPUB

A pipeline for:
1. Loading page photos in capture order
2. Extracting each page's text with a vision model (with retries)
3. Reflowing text across page boundaries into chapters
4. Packaging the chapters as an EPUB with a built-in ZIP writer
5. Accepting page uploads from capturing clients as chunked jobs
"""

__version__ = "1.0.0"
__author__ = "pagebinder"

from .config import PipelineConfig, Settings, SettingsStore
from .orchestrator import ConversionPipeline, ConversionRequest, ConversionResult

__all__ = [
    "ConversionPipeline",
    "ConversionRequest",
    "ConversionResult",
    "PipelineConfig",
    "Settings",
    "SettingsStore",
]
