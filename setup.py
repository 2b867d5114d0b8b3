from setuptools import setup, find_packages

setup(
    name="trainsync",
    version="0.0.1",
    description="Shard-group coordination for synchronous distributed training",
    author="lastweek",
    packages=find_packages(include=["trainsync", "trainsync.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.4.0",
        "omegaconf>=2.3.0",
        "tensorboard>=2.15.0",
        "tqdm>=4.66.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": ["pytest>=7.4.0"],
    },
)
