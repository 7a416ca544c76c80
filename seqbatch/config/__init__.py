from .batching import BatchingConfig
from .registry import Config, register_configs
from .runtime import (
    get_config,
    set_config,
    reset_config,
    automatic_unpacking_enabled,
    disable_automatic_unpacking,
)

__all__ = [
    "BatchingConfig",
    "Config",
    "register_configs",
    "get_config",
    "set_config",
    "reset_config",
    "automatic_unpacking_enabled",
    "disable_automatic_unpacking",
]
