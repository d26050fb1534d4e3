"""
Application configuration

Defaults live in ``DEFAULT_CONFIG``; an optional dictionary passed to the
app factory overrides them, and environment variables override both.
"""

import json
import os
from datetime import timedelta
from typing import Dict, Optional

DEFAULT_CONFIG = {
    'SECRET_KEY': 'checkin-dev-secret',
    'PERMANENT_SESSION_LIFETIME': timedelta(days=1),
    'DEBUG': False,
    'STORAGE_BACKEND': 'memory',
    'ACCESS_LOG_BACKEND': None,
    'DATA_DIR': 'data',
    'REDIS_HOST': 'localhost',
    'REDIS_PORT': 6379,
    'REDIS_DB': 0,
    'REDIS_PREFIX': 'checkin',
    'GOOGLE_SERVICE_ACCOUNT_JSON': None,
    'ACCESS_LOG_SPREADSHEET': 'Access_Log',
    'AUTO_DISMISS_SECONDS': 3.0,
    'SCAN_LOCK_TIMEOUT_SECONDS': 30.0,
    'REQUIRE_REGISTRATION_FIRST': False,
    'LOG_LEVEL': 'INFO',
    'LOG_FILE': None,
}

# Environment variable -> (config key, converter)
_ENVIRONMENT = {
    'FLASK_SECRET_KEY': ('SECRET_KEY', str),
    'DEBUG_MODE': ('DEBUG', lambda value: value == 'True'),
    'STORAGE_BACKEND': ('STORAGE_BACKEND', str),
    'ACCESS_LOG_BACKEND': ('ACCESS_LOG_BACKEND', str),
    'DATA_DIR': ('DATA_DIR', str),
    'REDIS_HOST': ('REDIS_HOST', str),
    'REDIS_PORT': ('REDIS_PORT', int),
    'REDIS_DB': ('REDIS_DB', int),
    'REDIS_PREFIX': ('REDIS_PREFIX', str),
    'GOOGLE_SERVICE_ACCOUNT_JSON': ('GOOGLE_SERVICE_ACCOUNT_JSON', json.loads),
    'ACCESS_LOG_SPREADSHEET': ('ACCESS_LOG_SPREADSHEET', str),
    'AUTO_DISMISS_SECONDS': ('AUTO_DISMISS_SECONDS', float),
    'SCAN_LOCK_TIMEOUT_SECONDS': ('SCAN_LOCK_TIMEOUT_SECONDS', float),
    'REQUIRE_REGISTRATION_FIRST': ('REQUIRE_REGISTRATION_FIRST', lambda value: value == 'True'),
    'LOG_LEVEL': ('LOG_LEVEL', str),
    'LOG_FILE': ('LOG_FILE', str),
}


def load_config(overrides: Optional[Dict] = None, environ: Optional[Dict] = None) -> Dict:
    """
    Build the effective configuration

    Args:
        overrides: Optional configuration dictionary
        environ: Environment mapping; defaults to ``os.environ``

    Returns:
        Configuration dictionary

    Raises:
        ValueError: If an environment variable cannot be converted
    """
    config = dict(DEFAULT_CONFIG)
    if overrides:
        config.update(overrides)

    environ = os.environ if environ is None else environ
    for variable, (key, convert) in _ENVIRONMENT.items():
        if variable in environ:
            try:
                config[key] = convert(environ[variable])
            except ValueError as e:
                raise ValueError(f"Invalid value for {variable}: {e}")

    if not config['ACCESS_LOG_BACKEND']:
        config['ACCESS_LOG_BACKEND'] = config['STORAGE_BACKEND']
    return config
