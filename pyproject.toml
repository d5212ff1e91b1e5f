[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "thermd"
version = "0.1.0"
description = "Thermal management engine: thermal zone registry, kernel uevents and adaptive GDDV policies"
requires-python = ">=3.10"
dependencies = []
keywords = ["thermal", "sysfs", "cooling", "gddv", "psvt", "adaptive", "linux"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["thermd"]

[tool.hatch.build.targets.sdist]
include = ["thermd", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
