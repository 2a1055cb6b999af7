[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "conflux"
version = "0.1.0"
description = "Versioned configuration store with label-based release rules and an in-memory Raft log store"
requires-python = ">=3.10"
dependencies = []
keywords = ["configuration", "raft", "versioning", "release-rules", "storage"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["conflux"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
