[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "boostrelay"
version = "0.1.0"
description = "Beacon-node client, relay data types, PostgreSQL storage and data-export tools for an Ethereum block-builder relay"
requires-python = ">=3.10"
keywords = [
    "ethereum",
    "relay",
    "block-builder",
    "beacon-node",
    "proposer",
    "mev",
    "postgresql",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
    "Topic :: Database",
]
dependencies = [
    "requests>=2.28",
    "sqlalchemy>=2.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "responses>=0.23",
]

[project.scripts]
boostrelay = "boostrelay.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["boostrelay"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
