import pytest
import torch

from seqbatch.config import reset_config


def pytest_addoption(parser: pytest.Parser):
    parser.addoption(
        "--no-cuda",
        action="store_true",
        default=False,
        help="Run cuda_if_available tests on the CPU even when a GPU is present",
    )


def pytest_configure(config: pytest.Config):
    config.addinivalue_line(
        "markers",
        "cuda_if_available: move batches to CUDA when a GPU is present, else stay on CPU",
    )


def batch_devices(metafunc: pytest.Metafunc) -> list[str]:
    """Devices a test's batches are placed on.

    Only tests marked cuda_if_available leave the host, and only when a GPU
    is present and --no-cuda was not given.
    """
    if metafunc.definition.get_closest_marker("cuda_if_available") is None:
        return ["cpu"]
    if metafunc.config.getoption("--no-cuda") or not torch.cuda.is_available():
        return ["cpu"]
    return ["cuda"]


def pytest_generate_tests(metafunc: pytest.Metafunc):
    if "device" in metafunc.fixturenames:
        metafunc.parametrize(
            "device", batch_devices(metafunc), ids=lambda d: f"device={d}"
        )


@pytest.fixture(autouse=True)
def fresh_batching_config():
    """Every test starts from the default process-wide batching config."""
    reset_config()
    yield
    reset_config()
