"""
Settings Manager - Centralized configuration handling
Loads defaults, resolves paths, merges user overrides and STORYBOT_* environment variables
"""
import json
import os
import logging
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = 'STORYBOT_'


class SettingsManager:
    """Read-only application settings: defaults, user file, then environment."""

    def __init__(self, base_dir=None, environ=None):
        self.BASE_DIR = Path(base_dir) if base_dir else Path(__file__).parent.parent
        self._environ = os.environ if environ is None else environ
        self._defaults = {}
        self._user = {}
        self._env = {}
        self._config = {}
        self._lock = threading.RLock()

        self._load_defaults()
        self._apply_construction()
        self._load_user_settings()
        self._load_env_overrides()
        self._merge_settings()

    def _flatten_dict(self, nested_dict):
        """Flatten nested categories to single level, keeping the original keys"""
        items = {}
        for k, v in nested_dict.items():
            if k.startswith('_'):  # Skip metadata keys like _comment
                continue
            if isinstance(v, dict):
                items.update(self._flatten_dict(v))
            else:
                items[k] = v
        return items

    def _defaults_path(self):
        return Path(__file__).parent / 'settings_defaults.json'

    def _user_path(self):
        return self.BASE_DIR / 'user' / 'settings.json'

    def _load_defaults(self):
        """Load core/settings_defaults.json"""
        defaults_path = self._defaults_path()
        try:
            with open(defaults_path, 'r', encoding='utf-8') as f:
                nested = json.load(f)
            self._defaults = self._flatten_dict(nested)
            logger.info(f"Loaded default settings from {defaults_path}")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load defaults: {e}")
            self._defaults = {}

    def _apply_construction(self):
        """Resolve relative paths against BASE_DIR"""
        self._defaults['BASE_DIR'] = str(self.BASE_DIR)
        for key in ('DB_PATH', 'STORY_FILES_DIR', 'LOG_DIR'):
            if key in self._defaults and not Path(self._defaults[key]).is_absolute():
                self._defaults[key] = str(self.BASE_DIR / self._defaults[key])

    def _load_user_settings(self):
        """Load user/settings.json if exists"""
        user_path = self._user_path()
        if user_path.exists():
            try:
                with open(user_path, 'r', encoding='utf-8') as f:
                    nested = json.load(f)
                self._user = self._flatten_dict(nested)
                logger.info(f"Loaded user settings from {user_path}")
            except (OSError, ValueError) as e:
                logger.error(f"Failed to load user settings: {e}")
                self._user = {}
        else:
            logger.info("No user settings found, using defaults")
            self._user = {}

    def _load_env_overrides(self):
        """STORYBOT_API_PORT=9000 overrides API_PORT. Values are parsed as JSON where possible."""
        self._env = {}
        for name, raw in self._environ.items():
            if not name.startswith(ENV_PREFIX):
                continue
            key = name[len(ENV_PREFIX):]
            try:
                self._env[key] = json.loads(raw)
            except ValueError:
                self._env[key] = raw
        if self._env:
            logger.info(f"Applied environment overrides: {sorted(self._env)}")

    def _merge_settings(self):
        """Defaults, then user file, then environment"""
        self._config = {**self._defaults, **self._user, **self._env}

    def get(self, key, default=None):
        """Get a setting value"""
        with self._lock:
            return self._config.get(key, default)

    # Make this act like a module for attribute access
    def __getattr__(self, key):
        """Allow settings.KEY_NAME access"""
        if key.startswith('_'):
            return object.__getattribute__(self, key)
        with self._lock:
            if key in self._config:
                return self._config[key]
        raise AttributeError(f"Setting '{key}' not found")

    def __contains__(self, key):
        """Allow 'key in settings' checks"""
        with self._lock:
            return key in self._config

    def __repr__(self):
        return f"<SettingsManager: {len(self._config)} settings>"


# Create singleton instance
settings = SettingsManager()
