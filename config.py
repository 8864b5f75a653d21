"""
Configuration Proxy

Defaults live in core/settings_defaults.json, overrides in user/settings.json
or STORYBOT_<KEY> environment variables.
"""

# Proxy all attribute access to settings_manager
from core.settings_manager import settings as _settings

def __getattr__(name):
    """Forward all config.SOMETHING to settings_manager"""
    return getattr(_settings, name)

# For 'key in config' checks
def __contains__(key):
    return key in _settings

def get(key, default=None):
    """config.get('API_KEY', '') for optional settings"""
    return _settings.get(key, default)
