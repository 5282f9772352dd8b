"""
Configuration for the execution engine.
"""

from execution_engine.infrastructure.config.languages import (
    default_descriptors,
    load_languages,
)
from execution_engine.infrastructure.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "default_descriptors",
    "load_languages",
]
