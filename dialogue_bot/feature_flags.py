"""
Feature flags for the dialogue bot.

Usage:
    from dialogue_bot.feature_flags import flags

    if flags.generative_responses:
        ...

    if flags.is_enabled("custom_flag"):
        ...
"""

import os
from typing import Dict, Set

from dialogue_bot.settings import settings


class FeatureFlags:
    """
    Feature flags loaded from settings.yaml.

    Priority (highest first): runtime overrides, FF_<NAME> environment
    variables, settings.feature_flags, DEFAULTS.
    """

    DEFAULTS: Dict[str, bool] = {
        "generative_responses": True,   # Ask the LLM before falling back to templates
        "quick_actions": True,          # Suggested replies per conversation stage
        "intent_display": True,         # Expose intent/confidence to the UI
        "context_display": True,        # Expose the "Detected: ..." context note
    }

    def __init__(self):
        self._flags: Dict[str, bool] = {}
        self._overrides: Dict[str, bool] = {}
        self._load_flags()

    def _load_flags(self) -> None:
        self._flags = self.DEFAULTS.copy()

        settings_flags = settings.get_nested("feature_flags", {})
        if isinstance(settings_flags, dict):
            for key, value in settings_flags.items():
                if isinstance(value, bool):
                    self._flags[key] = value

        for key in self._flags:
            env_value = os.environ.get(f"FF_{key.upper()}")
            if env_value is not None:
                self._flags[key] = env_value.lower() in ("true", "1", "yes", "on")

    def reload(self) -> None:
        """Reload flags from settings and drop overrides"""
        self._overrides.clear()
        self._load_flags()

    def is_enabled(self, flag: str) -> bool:
        if flag in self._overrides:
            return self._overrides[flag]
        return self._flags.get(flag, False)

    def set_override(self, flag: str, value: bool) -> None:
        """Runtime override, used by tests and the CLI"""
        self._overrides[flag] = value

    def clear_override(self, flag: str) -> None:
        self._overrides.pop(flag, None)

    def clear_all_overrides(self) -> None:
        self._overrides.clear()

    def get_all_flags(self) -> Dict[str, bool]:
        result = self._flags.copy()
        result.update(self._overrides)
        return result

    def get_enabled_flags(self) -> Set[str]:
        return {k for k, v in self.get_all_flags().items() if v}

    @property
    def generative_responses(self) -> bool:
        return self.is_enabled("generative_responses")

    @property
    def quick_actions(self) -> bool:
        return self.is_enabled("quick_actions")

    @property
    def intent_display(self) -> bool:
        return self.is_enabled("intent_display")

    @property
    def context_display(self) -> bool:
        return self.is_enabled("context_display")


flags = FeatureFlags()
