"""Configuration module for loading and managing application settings"""
import os
from typing import Dict, Any

from .lib.load_settings_conf import (
    load_settings_conf,
    validate_settings,
    SettingsError,
    DEFAULTS
)

__all__ = ['settings_conf', 'load_settings', 'SettingsError', 'DEFAULTS']

def load_settings(settings_path: str = None) -> Dict[str, Any]:
    """Load and validate settings.

    Args:
        settings_path: Directory containing settings.conf. Defaults to
            KIKWETU_SETTINGS_PATH or the current directory.

    Returns:
        Validated settings dictionary
    """
    path = settings_path or os.environ.get('KIKWETU_SETTINGS_PATH', '.')
    return validate_settings(load_settings_conf(path))

try:
    settings_conf: Dict[str, Any] = load_settings()

except SettingsError as e:
    # Re-raise the error but provide more context
    raise SettingsError(
        f"Configuration Error\n"
        "=================\n\n"
        f"{str(e)}\n\n"
        "Please ensure settings.conf is properly configured.\n"
        "See settings.conf.example for the available settings."
    )
