"""Agent definition loading utilities."""

from .loader import ConfigLoadError, ConfigLoader, default_config
from .models import AgentConfig, AgentHooks, AgentModeConfig, TermtileConfig

__all__ = [
    "AgentConfig",
    "AgentHooks",
    "AgentModeConfig",
    "ConfigLoadError",
    "ConfigLoader",
    "TermtileConfig",
    "default_config",
]
