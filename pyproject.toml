[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "datasync"
version = "0.1.0"
description = "Synchronise files from external repositories into Dataverse datasets, with hashing, comparison and a background job queue."
requires-python = ">=3.10"
keywords = ["dataverse", "synchronisation", "research data", "hashing", "quickxorhash"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Mirroring",
]
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["datasync"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
