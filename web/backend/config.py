#!/usr/bin/env python3
"""
Configuration management for the notification web application.
"""

import os
from pathlib import Path
from functools import lru_cache

from core.config_loader import AppConfig, load_config


@lru_cache()
def get_config() -> AppConfig:
    """
    Get application configuration with caching.

    Loads config.yaml (or NOTIFICATION_CONFIG) and applies environment
    variable overrides. Falls back to defaults when no file exists.
    """
    config_path = os.environ.get('NOTIFICATION_CONFIG', str(get_project_root() / 'config.yaml'))
    if not os.path.exists(config_path):
        return AppConfig()
    config = load_config(config_path)

    # Web server overrides
    if 'WEB_HOST' in os.environ:
        config.web.host = os.environ['WEB_HOST']
    if 'WEB_PORT' in os.environ:
        config.web.port = int(os.environ['WEB_PORT'])
    return config


def get_project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent.parent
