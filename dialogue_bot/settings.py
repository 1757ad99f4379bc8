"""
Settings loader for settings.yaml

Usage:
    from dialogue_bot.settings import settings

    url = settings.llm.api_url
    weight = settings.classifier.weights.pattern
"""

import os
from pathlib import Path
from typing import Any, List

import yaml


SETTINGS_FILE = Path(__file__).parent / "settings.yaml"

# Used when a value is missing from the YAML file
DEFAULTS = {
    "llm": {
        "enabled": True,
        "api_url": "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent",
        "api_key": "",
        "timeout": 30,
        "max_retries": 3,
        "base_delay": 1.0,
        "history_window": 5,
        "generation_config": {
            "temperature": 0.7,
            "topK": 40,
            "topP": 0.95,
            "maxOutputTokens": 150,
        },
    },
    "bot": {
        "persona": "customer_service",
        "escalation_threshold": 2,
        "apology": (
            "I apologize, but I'm experiencing technical difficulties. "
            "Please try again in a moment."
        ),
    },
    "classifier": {
        "weights": {
            "keyword": 1.0,
            "pattern": 2.0,
            "context_bonus": 0.5,
        },
        "normalizer": 3.0,
    },
    "api": {
        "session_ttl_seconds": 3600,
    },
    "logging": {
        "level": "INFO",
        "log_prompts": False,
    },
    "feature_flags": {},
}


class DotDict(dict):
    """Dict with attribute access: d.key instead of d['key']"""

    def __getattr__(self, key: str) -> Any:
        try:
            value = self[key]
            if isinstance(value, dict):
                return DotDict(value)
            return value
        except KeyError:
            raise AttributeError(f"Setting '{key}' not found")

    def __setattr__(self, key: str, value: Any) -> None:
        self[key] = value

    def get_nested(self, path: str, default: Any = None) -> Any:
        """Get a value by dotted path: 'llm.api_url'"""
        keys = path.split('.')
        value = self
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep dict merge (override wins)"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(filepath: Path = None) -> DotDict:
    """
    Load settings from a YAML file.

    Priority (highest first):
    1. GEMINI_API_KEY environment variable (llm.api_key only)
    2. Values from the YAML file
    3. DEFAULTS

    Args:
        filepath: Path to the settings file (settings.yaml by default)

    Returns:
        DotDict with settings
    """
    filepath = filepath or SETTINGS_FILE

    config = _deep_merge({}, DEFAULTS)

    if filepath.exists():
        with open(filepath, "r", encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        config = _deep_merge(config, yaml_config)
    else:
        print(f"[settings] Settings file not found: {filepath}")
        print("[settings] Using defaults")

    api_key = os.environ.get("GEMINI_API_KEY")
    if api_key:
        config["llm"]["api_key"] = api_key

    return DotDict(config)


def validate_settings(settings: DotDict) -> List[str]:
    """
    Validate settings.

    Returns:
        List of errors (empty if everything is OK)
    """
    errors = []

    # LLM
    if not settings.llm.api_url:
        errors.append("llm.api_url is not set")
    if settings.llm.timeout <= 0:
        errors.append("llm.timeout must be > 0")
    if settings.llm.max_retries < 0:
        errors.append("llm.max_retries must be >= 0")
    if settings.llm.base_delay < 0:
        errors.append("llm.base_delay must be >= 0")
    if settings.llm.history_window < 0:
        errors.append("llm.history_window must be >= 0")

    # Bot
    if settings.bot.escalation_threshold < 0:
        errors.append("bot.escalation_threshold must be >= 0")
    if not settings.bot.apology:
        errors.append("bot.apology is not set")

    # API
    if settings.api.session_ttl_seconds <= 0:
        errors.append("api.session_ttl_seconds must be > 0")

    # Classifier
    for name in ["keyword", "pattern", "context_bonus"]:
        value = settings.classifier.weights.get(name, 0)
        if value < 0:
            errors.append(f"classifier.weights.{name} must be >= 0")
    if settings.classifier.normalizer <= 0:
        errors.append("classifier.normalizer must be > 0")

    return errors


# Global settings instance (lazy load)
_settings = None


def get_settings() -> DotDict:
    """Get global settings (singleton)"""
    global _settings
    if _settings is None:
        _settings = load_settings()
        errors = validate_settings(_settings)
        if errors:
            print("[settings] Invalid settings:")
            for err in errors:
                print(f"  - {err}")
    return _settings


def reload_settings() -> DotDict:
    """Reload settings from file"""
    global _settings
    _settings = None
    return get_settings()


# For convenient import: from dialogue_bot.settings import settings
settings = get_settings()


if __name__ == "__main__":
    import json

    s = load_settings()
    errors = validate_settings(s)
    if errors:
        print("\n[!] ERRORS:")
        for err in errors:
            print(f"  - {err}")
    else:
        print("\n[+] All settings are valid")

    print(json.dumps(dict(s), indent=2, ensure_ascii=False))
