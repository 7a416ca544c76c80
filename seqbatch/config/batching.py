# pyright: reportAssignmentType=false
from dataclasses import dataclass


@dataclass
class BatchingConfig:
    """Configuration for sequence batching and packed-value unpacking."""

    # when False, padded packed values (more than one time step and more than
    # one sequence) must be unpacked explicitly
    automatic_unpacking: bool = True

    default_device: str = "cpu"
    default_dtype: str = "${torch_dtype:float32}"

    log_level: str = "WARNING"
