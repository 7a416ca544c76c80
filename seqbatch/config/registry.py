from dataclasses import dataclass, field

from hydra.core.config_store import ConfigStore

from .batching import BatchingConfig
from .resolvers import register_resolvers


@dataclass
class Config:
    batching: BatchingConfig = field(default_factory=BatchingConfig)


def register_configs():
    cs = ConfigStore.instance()

    cs.store(name="base_config", node=Config)
    cs.store(group="batching", name="base_batching", node=BatchingConfig)

    register_resolvers()
