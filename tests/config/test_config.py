import logging

import pytest
import torch
from hydra.core.config_store import ConfigStore
from omegaconf import OmegaConf
from omegaconf.errors import ConfigKeyError

from seqbatch.config import (
    BatchingConfig,
    automatic_unpacking_enabled,
    disable_automatic_unpacking,
    get_config,
    register_configs,
    reset_config,
    set_config,
)
from seqbatch.config.resolvers import register_resolvers, torch_dtype
from seqbatch.config.runtime import default_device, default_dtype
from seqbatch.value import Value


class TestRuntimeConfig:
    def test_defaults(self):
        cfg = get_config()

        assert isinstance(cfg, BatchingConfig)
        assert cfg.automatic_unpacking
        assert cfg.default_dtype == "float32"
        assert default_dtype() == torch.float32
        assert default_device() == torch.device("cpu")

    def test_set_from_dict(self):
        cfg = set_config({"default_dtype": "${torch_dtype:double}"})

        assert cfg.default_dtype == "float64"
        assert cfg.automatic_unpacking
        assert default_dtype() == torch.float64

    def test_set_from_dictconfig(self):
        set_config(OmegaConf.create({"automatic_unpacking": False, "log_level": "DEBUG"}))

        assert not automatic_unpacking_enabled()
        assert logging.getLogger("seqbatch").level == logging.DEBUG

    def test_unknown_key(self):
        with pytest.raises(ConfigKeyError):
            set_config({"not_a_setting": 1})

    def test_reset(self):
        set_config(BatchingConfig(automatic_unpacking=False))
        reset_config()

        assert automatic_unpacking_enabled()

    def test_disable_automatic_unpacking_restores(self):
        set_config({"default_dtype": "float64"})

        with disable_automatic_unpacking():
            assert not automatic_unpacking_enabled()
            assert default_dtype() == torch.float64

        assert automatic_unpacking_enabled()
        assert default_dtype() == torch.float64

    def test_disable_automatic_unpacking_keeps_logger_level(self):
        logger = logging.getLogger("seqbatch")
        previous_level = logger.level
        logger.setLevel(logging.INFO)
        try:
            with disable_automatic_unpacking():
                assert logger.level == logging.INFO
            assert logger.level == logging.INFO
        finally:
            logger.setLevel(previous_level)

    def test_default_dtype_applies_to_list_buffers(self):
        set_config({"default_dtype": "float64"})

        value = Value.from_sequences((1,), [[1, 2], [3]])
        one_hot = Value.from_one_hot(3, [[0, 1]])

        assert value.dtype == torch.float64
        assert one_hot.dtype == torch.float64


class TestResolvers:
    def test_torch_dtype(self):
        assert torch_dtype("double") == "float64"
        assert torch_dtype("Float") == "float32"
        assert torch_dtype("float64") == "float64"

    def test_unsupported_dtype(self):
        with pytest.raises(ValueError, match="Unsupported dtype"):
            torch_dtype("int8")

    def test_interpolation(self):
        register_resolvers()
        cfg = OmegaConf.create({"dtype": "${torch_dtype:double}"})

        assert cfg.dtype == "float64"


class TestRegistry:
    def test_register_configs(self):
        register_configs()
        cs = ConfigStore.instance()

        base = cs.load("base_config.yaml")
        batching = cs.load("batching/base_batching.yaml")

        assert base.node.batching.automatic_unpacking
        assert batching.node.log_level == "WARNING"
