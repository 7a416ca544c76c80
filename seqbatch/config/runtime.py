"""Process-wide batching configuration.

The active :class:`BatchingConfig` holds the defaults until :func:`set_config`
is called, typically once at program start with the ``batching`` node of a
hydra config. Code that needs a setting resolves it here at the point of use.
"""
import contextlib
import dataclasses
import logging
from typing import Optional, Union

import torch
from omegaconf import DictConfig, OmegaConf

from .batching import BatchingConfig
from .resolvers import register_resolvers

_logger = logging.getLogger(__name__)

_config: Optional[BatchingConfig] = None


def _resolve(cfg: Union[BatchingConfig, DictConfig, dict]) -> BatchingConfig:
    register_resolvers()
    merged = OmegaConf.merge(OmegaConf.structured(BatchingConfig), cfg)
    return OmegaConf.to_object(merged)


def get_config() -> BatchingConfig:
    global _config
    if _config is None:
        _config = _resolve(BatchingConfig())
    return _config


def set_config(cfg: Union[BatchingConfig, DictConfig, dict]) -> BatchingConfig:
    """Installs `cfg` as the process-wide batching config.

    Args:
        cfg (Union[BatchingConfig, DictConfig, dict]): The new settings. Missing
            keys take their defaults from BatchingConfig.

    Returns:
        BatchingConfig: The resolved config now in effect.
    """
    global _config
    _config = _resolve(cfg)
    logging.getLogger("seqbatch").setLevel(_config.log_level)
    _logger.debug("Batching config set to %s", _config)
    return _config


def reset_config():
    global _config
    _config = None


def automatic_unpacking_enabled() -> bool:
    return get_config().automatic_unpacking


def default_device() -> torch.device:
    return torch.device(get_config().default_device)


def default_dtype() -> torch.dtype:
    return getattr(torch, get_config().default_dtype)


@contextlib.contextmanager
def disable_automatic_unpacking():
    """Temporarily forbids implicit unpacking of padded packed values."""
    global _config
    previous = get_config()
    # leaves the level of the seqbatch logger alone
    _config = dataclasses.replace(previous, automatic_unpacking=False)
    try:
        yield
    finally:
        _config = previous
