import os
import json
import logging

from .errors import RestoreConfigurationError

logger = logging.getLogger(__name__)

# ================= CONFIGURATION =================

DEFAULT_CONFIG = {
    'server': 'localhost',
    'driver': 'ODBC Driver 17 for SQL Server',
    'use_windows_auth': True,
    'username': None,
    'password': None,
    'login_timeout': 15,
    'encrypt': False,
    'trust_server_certificate': True,
    'stats_interval': 10,
    'progress_poll_seconds': 2,
    'log_file': 'sqlrestore.log',
    'log_level': 'INFO',
}

ENV_OVERRIDES = {
    'SQLRESTORE_SERVER': 'server',
    'SQLRESTORE_DRIVER': 'driver',
    'SQLRESTORE_USERNAME': 'username',
    'SQLRESTORE_PASSWORD': 'password',
}


def load_config(path=None, environ=None):
    """Build a config dict from defaults, an optional JSON file and the environment."""
    config = dict(DEFAULT_CONFIG)

    if path:
        if os.path.exists(path):
            try:
                with open(path, encoding='utf-8') as fh:
                    data = json.load(fh)
            except (OSError, json.JSONDecodeError) as e:
                raise RestoreConfigurationError(f"Could not read config file {path}: {e}")
            if not isinstance(data, dict):
                raise RestoreConfigurationError(f"Config file {path} must contain a JSON object")
            unknown = set(data) - set(DEFAULT_CONFIG)
            if unknown:
                logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
            config.update({k: v for k, v in data.items() if k in DEFAULT_CONFIG})
            logger.debug(f"Loaded configuration from {path}")
        else:
            logger.debug(f"Config file not found, using defaults: {path}")

    environ = os.environ if environ is None else environ
    for var, key in ENV_OVERRIDES.items():
        if environ.get(var):
            config[key] = environ[var]
    if environ.get('SQLRESTORE_USERNAME'):
        config['use_windows_auth'] = False

    return config


def build_connection_string(config, database=None, credential=None):
    """Generate an ODBC connection string for the configured instance."""
    try:
        parts = [f"DRIVER={{{config['driver']}}}", f"SERVER={config['server']}"]
        if database:
            parts.append(f"DATABASE={database}")

        if credential is not None:
            parts.append(f"UID={credential.username}")
            parts.append(f"PWD={{{credential.password}}}")
        elif config['use_windows_auth']:
            parts.append("Trusted_Connection=yes")
        else:
            if not config['username']:
                raise RestoreConfigurationError("SQL authentication requires a username")
            parts.append(f"UID={config['username']}")
            parts.append(f"PWD={{{config['password'] or ''}}}")

        parts.append(f"Encrypt={'yes' if config['encrypt'] else 'no'}")
        if config['trust_server_certificate']:
            parts.append("TrustServerCertificate=yes")
        return ";".join(parts) + ";"
    except KeyError as e:
        logger.error(f"Missing configuration key: {e}")
        raise RestoreConfigurationError(f"Missing configuration key: {e}")
