"""Configuration loading utilities."""

import os
from pathlib import Path
from typing import Any, Dict

import yaml
from dotenv import load_dotenv


DEFAULT_BSC_RPC_URL = "https://bsc-dataseed.binance.org"

# Section defaults applied after the YAML file is read
SECTION_DEFAULTS: Dict[str, Dict[str, Any]] = {
    'auth': {
        'jwt_secret_env': 'SUPABASE_JWT_SECRET',
        'audience': 'authenticated',
    },
    'bsc': {
        'rpc_url': DEFAULT_BSC_RPC_URL,
        'chain_id': 56,
        'timeout': 30,
    },
    'hot_wallet': {
        'private_key_env': 'ADMIN_WALLET_PRIVATE_KEY',
    },
    'reconciliation': {
        'tolerance': 0.01,
        'halt_threshold': 1.0,
        'auto_halt': False,
        'batch_size': 1000,
    },
    'ad_mining': {
        'duplicate_window_seconds': 30,
        'history_retention_days': 7,
        'completion_bonus_enabled': True,
        'completion_bonus_percent': 10,
        'completion_bonus_destination': 'withdrawable',
    },
    'withdrawals': {
        'batch_size': 10,
        'low_gas_warn_bnb': 0.05,
        'low_gas_abort_bnb': 0.005,
        'per_run_outflow_cap': 10000,
        'daily_user_cap': None,
        'daily_global_cap': None,
        'receipt_timeout_seconds': 120,
    },
    'logging': {
        'level': 'INFO',
    },
}


def load_config(path: str = "config/config.yaml") -> dict:
    """
    Load YAML configuration file from specified path and return as dictionary.

    Args:
        path: Configuration file path (default: config/config.yaml)

    Returns:
        Configuration dictionary with section defaults applied

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        ValueError: If configuration file is empty or invalid
    """
    # __file__ is ismart_edge/core/config_loader.py, project root is 3 levels up
    root_dir = Path(__file__).parent.parent.parent
    env_path = root_dir / '.env'
    if env_path.exists():
        load_dotenv(env_path)

    config_path = Path(path)
    if not config_path.is_absolute():
        config_path = root_dir / path

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file does not exist: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if not config or not isinstance(config, dict):
        raise ValueError(f"Configuration file is empty or has invalid format: {path}")

    return validate_config(config)


def validate_config(config: dict) -> dict:
    """
    Validate configuration sections and fill in defaults.

    Args:
        config: Raw configuration dictionary

    Returns:
        Validated configuration dictionary

    Raises:
        ValueError: Configuration validation failed
    """
    for section, defaults in SECTION_DEFAULTS.items():
        value = config.get(section) or {}
        if not isinstance(value, dict):
            raise ValueError(f"Config section '{section}' must be a dictionary")
        for key, default in defaults.items():
            value.setdefault(key, default)
        config[section] = value

    config['database'] = _validate_database(config.get('database') or {})
    _validate_reconciliation(config['reconciliation'])
    _validate_ad_mining(config['ad_mining'])
    _validate_withdrawals(config['withdrawals'])

    return config


def _validate_database(database: dict) -> dict:
    """Resolve the database URL from the config or its environment variable."""
    if not isinstance(database, dict):
        raise ValueError("Config section 'database' must be a dictionary")

    url = database.get('url')
    if not url:
        env_var = database.get('url_env', 'DATABASE_URL')
        url = os.environ.get(env_var)
    if not url:
        raise ValueError(
            "Database URL not configured. Set 'database.url' or the DATABASE_URL environment variable "
            "(example: sqlite:///ismart.db)"
        )

    if not (url.startswith('sqlite:///') or url.startswith('postgresql://')):
        raise ValueError(f"Unsupported database URL format: {url}. Supported: sqlite:/// or postgresql://")

    database['url'] = url
    return database


def _validate_reconciliation(section: dict):
    tolerance = float(section['tolerance'])
    halt_threshold = float(section['halt_threshold'])
    if tolerance < 0:
        raise ValueError(f"reconciliation.tolerance must be >= 0, current value: {tolerance}")
    if halt_threshold < tolerance:
        raise ValueError(
            f"reconciliation.halt_threshold ({halt_threshold}) must not be below tolerance ({tolerance})"
        )
    if int(section['batch_size']) <= 0:
        raise ValueError("reconciliation.batch_size must be positive")


def _validate_ad_mining(section: dict):
    if int(section['duplicate_window_seconds']) < 0:
        raise ValueError("ad_mining.duplicate_window_seconds must be >= 0")
    if section['completion_bonus_destination'] not in ['holding', 'withdrawable']:
        raise ValueError(
            f"ad_mining.completion_bonus_destination must be 'holding' or 'withdrawable', "
            f"current value: {section['completion_bonus_destination']}"
        )


def _validate_withdrawals(section: dict):
    if float(section['low_gas_abort_bnb']) > float(section['low_gas_warn_bnb']):
        raise ValueError("withdrawals.low_gas_abort_bnb must not exceed low_gas_warn_bnb")
    for key in ("daily_user_cap", "daily_global_cap"):
        if section[key] is not None and float(section[key]) <= 0:
            raise ValueError(f"withdrawals.{key} must be positive when set")


def load_secret(config: dict, section: str, key: str) -> str:
    """
    Securely load a secret referenced by a ``*_env`` config key.

    Args:
        config: Configuration dictionary
        section: Config section name (e.g. 'hot_wallet')
        key: Key holding the environment variable name (e.g. 'private_key_env')

    Returns:
        Secret value

    Raises:
        ValueError: Environment variable not configured or not set
    """
    env_var = config.get(section, {}).get(key)
    if not env_var:
        raise ValueError(f"Config '{section}.{key}' must name the environment variable holding the secret")

    value = os.environ.get(env_var)
    if not value:
        raise ValueError(f"Environment variable '{env_var}' not set, cannot load secret for '{section}'")
    return value
