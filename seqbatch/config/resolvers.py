from omegaconf import OmegaConf

_DTYPE_NAMES = {
    "float32": "float32",
    "float": "float32",
    "float64": "float64",
    "double": "float64",
}


def torch_dtype(name: str) -> str:
    """Returns the canonical torch dtype name for a supported element type."""
    try:
        return _DTYPE_NAMES[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unsupported dtype '{name}', expected one of {sorted(_DTYPE_NAMES)}"
        )


def register_resolvers():
    if not OmegaConf.has_resolver("torch_dtype"):
        OmegaConf.register_new_resolver("torch_dtype", torch_dtype)
