[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pibussim"
version = "0.1.0"
description = "Cycle-level models of PIBUS system-bus components: bus controller, RAM, locks, timers, terminals and DMA"
requires-python = ">=3.10"
dependencies = []
keywords = ["pibus", "bus", "simulation", "cycle-accurate", "soc", "hardware-modelling"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: POSIX",
    "Topic :: Scientific/Engineering :: Electronic Design Automation (EDA)",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["pibussim"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
