from setuptools import setup, find_packages

setup(
    name="seqbatch",
    version="0.1",
    description="padded and packed batches of variable-length sequences for torch",
    packages=find_packages(include=["seqbatch", "seqbatch.*"]),
    install_requires=[
        "numpy",
        "scipy",
        "torch",
        "hydra-core",
        "omegaconf",
    ],
    extras_require={
        "test": [
            "pytest",
            "hypothesis",
        ],
    },
)
