[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "litefs"
version = "0.1.0"
description = "Configuration loading, Consul primary leasing and command-line tools for a replicated SQLite cluster node"
requires-python = ">=3.10"
keywords = ["sqlite", "replication", "consul", "lease", "configuration", "benchmark"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]
dependencies = [
    "pyyaml",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
litefs = "litefs.cli:main"
litefs-bench = "litefs.bench:main"

[tool.hatch.build.targets.wheel]
packages = ["litefs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
