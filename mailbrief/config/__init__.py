# Configuration module
from mailbrief.config.settings import Settings, ensure_env_file, get_settings, reload_settings

__all__ = ["Settings", "ensure_env_file", "get_settings", "reload_settings"]
