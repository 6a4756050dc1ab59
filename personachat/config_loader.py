"""
PersonaChat Configuration Loader

Loads configuration from config.yaml with environment variable overrides.
Environment variables override YAML settings with format:
  PERSONACHAT_{SECTION}_{KEY}

Example:
  PERSONACHAT_SERVER_PORT=9000
  PERSONACHAT_JOB_QUEUE_POLL_INTERVAL=2.0
"""

import copy
import logging
import os
import yaml
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

# Default configuration (fallback if config.yaml missing)
DEFAULT_CONFIG = {
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
        "cors_origins": ["*"],
        "log_level": "INFO",
        "db_path": ""
    },
    "context": {
        # Context window assumed for the OpenAI-compatible and job-queue backends,
        # which are often small local models
        "safe_context_limit": 8192,
        "safety_buffer": 100,
        "message_overhead": 10,
        "world_info_scan_window": 3,
        # Gemini models carry a very large window; trimming there is a backstop
        "chat_completion_context_limit": 1000000
    },
    "continuation": {
        "max_attempts": 3,
        "min_shortfall_chars": 50,
        "chars_per_word": 5
    },
    "job_queue": {
        "base_url": "https://stablehorde.net/api/v2",
        "poll_interval": 1.5,
        "max_poll_attempts": 60,
        "anonymous_max_length": 512,
        "authenticated_max_length": 1024,
        "max_context_length": 8192,
        "default_model": "fimbulvetr-11b-v2",
        "client_agent": "PersonaChat:1.0:User",
        "anonymous_api_key": "0000000000"
    },
    "providers": {
        "openai_url": "https://api.openai.com/v1",
        "openrouter_url": "https://openrouter.ai/api/v1",
        "deepseek_url": "https://api.deepseek.com",
        "routeway_url": "https://api.routeway.ai/v1",
        "openrouter_title": "PersonaChat RP",
        "default_referer": "http://localhost:3000",
        "gemini_fallback_model": "gemini-2.0-flash",
        "gemini_thinking_models": ["gemini-3-flash-preview"],
        "gemini_thinking_budget": 1024,
        "request_timeout": 120.0,
        "translate_url": "https://translate.googleapis.com/translate_a/single"
    },
    "summarization": {
        "max_attempts": 3,
        "backoff_seconds": 2.0,
        "max_output_tokens": 2048
    },
    "character_generation": {
        "temperature": 0.7,
        "short": 2048,
        "medium": 4096,
        "long": 8192
    }
}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from config.yaml with environment variable overrides.

    Args:
        config_path: Path to config.yaml file (optional, auto-detected if not provided)

    Returns:
        Complete configuration dictionary with nested sections
    """
    # Start with defaults
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is None:
        # Auto-detect config.yaml location (project root)
        base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        config_path = os.path.join(base_dir, "config.yaml")

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    # Deep merge: YAML overrides defaults
                    config = _deep_merge(config, yaml_config)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"[CONFIG] Failed to load {config_path}: {e}")
            logger.warning("[CONFIG] Using default configuration")
    else:
        logger.info(f"[CONFIG] config.yaml not found at {config_path}, using defaults")

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Override dictionary (values take precedence)

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Format: PERSONACHAT_{SECTION}_{KEY}

    Section and key names may themselves contain underscores, so the
    longest section name that matches the prefix wins:
        PERSONACHAT_JOB_QUEUE_POLL_INTERVAL -> job_queue.poll_interval
        PERSONACHAT_CONTEXT_SAFE_CONTEXT_LIMIT -> context.safe_context_limit
    """
    env_prefix = "PERSONACHAT_"
    if environ is None:
        environ = dict(os.environ)

    sections = sorted(config.keys(), key=len, reverse=True)

    for env_key, env_value in environ.items():
        if not env_key.startswith(env_prefix):
            continue

        remainder = env_key[len(env_prefix):].lower()

        section = next((s for s in sections if remainder.startswith(s + "_")), None)
        if section is None or not isinstance(config[section], dict):
            continue  # Unknown section

        target = config[section]
        final_key = remainder[len(section) + 1:]

        # Type conversion based on existing config value
        if final_key not in target:
            continue
        current = target[final_key]
        try:
            if isinstance(current, bool):
                target[final_key] = env_value.lower() in ('true', '1', 'yes')
            elif isinstance(current, int):
                target[final_key] = int(env_value)
            elif isinstance(current, float):
                target[final_key] = float(env_value)
            elif isinstance(current, list):
                target[final_key] = [v.strip() for v in env_value.split(',') if v.strip()]
            else:
                target[final_key] = env_value
        except ValueError:
            logger.warning(f"[CONFIG] Ignoring {env_key}: cannot convert {env_value!r}")

    return config


# Global config instance (loaded once on import)
CONFIG = load_config()
