"""Configuration management."""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

# Load .env file if it exists
env_file = Path(__file__).parent.parent / '.env'
if env_file.exists():
    load_dotenv(env_file)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or str(value).strip() == '':
        return None
    return int(value)


def load_config() -> Dict[str, Any]:
    """Load configuration from YAML file and environment variables."""
    config_file = Path(os.getenv('CONFIG_FILE', Path(__file__).parent.parent / 'config' / 'config.yaml'))

    # Load from YAML
    if config_file.exists():
        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}
    else:
        config = {}

    # Override with environment variables
    config['SECRET_KEY'] = os.getenv('SECRET_KEY', config.get('secret_key', 'dev-secret-key-change-in-production'))
    config['ANTHROPIC_API_KEY'] = os.getenv('ANTHROPIC_API_KEY', config.get('anthropic_api_key', ''))
    config['LLM_MODEL'] = os.getenv('LLM_MODEL', config.get('llm_model', ''))
    config['DATA_DIR'] = os.getenv('DATA_DIR', config.get('data_dir', 'data/cases'))
    config['DEBUG'] = os.getenv('DEBUG', 'false').lower() == 'true' or config.get('debug', False)
    config['INTERPRETER_BACKEND'] = os.getenv('INTERPRETER_BACKEND', config.get('interpreter_backend', 'llm'))
    config['INTERPRETER_URL'] = os.getenv('INTERPRETER_URL', config.get('interpreter_url', ''))
    config['INTERPRETER_TIMEOUT'] = float(os.getenv('INTERPRETER_TIMEOUT', config.get('interpreter_timeout', 60)))
    config['MAX_CLARIFICATION_TURNS'] = _optional_int(
        os.getenv('MAX_CLARIFICATION_TURNS', config.get('max_clarification_turns'))
    )

    # The LLM client reads its settings from the environment
    if config['ANTHROPIC_API_KEY'] and not os.getenv('ANTHROPIC_API_KEY'):
        os.environ['ANTHROPIC_API_KEY'] = config['ANTHROPIC_API_KEY']
    if config['LLM_MODEL'] and not os.getenv('LLM_MODEL'):
        os.environ['LLM_MODEL'] = config['LLM_MODEL']

    return config


def get_config() -> Dict[str, Any]:
    """Get current configuration."""
    return load_config()
