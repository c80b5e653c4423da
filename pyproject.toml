[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "firecore"
version = "0.1.0"
description = "Building blocks for running a blockchain reader node: process supervision, log plugins, one-block archiving, operator commands and data directory bootstrapping."
requires-python = ">=3.11"
dependencies = [
    "zstandard",
]
keywords = [
    "blockchain",
    "reader-node",
    "supervisor",
    "log-plugin",
    "block-archiving",
    "operator",
    "bootstrap",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["firecore"]

[tool.hatch.build.targets.sdist]
include = [
    "firecore",
    "tests",
    "pyproject.toml",
    "README.md",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
