"""
Utility modules for the crawler.
"""

from .config import Config, ConfigManager, load_config, config_from_dict, validate_config

__all__ = ['Config', 'ConfigManager', 'load_config', 'config_from_dict', 'validate_config']
