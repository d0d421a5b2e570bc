[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "proxyd"
version = "0.1.0"
description = "Building blocks for an Ethereum JSON-RPC proxy: request parsing, block-tag rewriting, rate limiting and backend consensus tracking"
requires-python = ">=3.11"
keywords = ["ethereum", "json-rpc", "proxy", "rate-limit", "consensus", "rpc"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
]
dependencies = [
    "redis>=5.0",
    "pyyaml>=6.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[project.scripts]
proxyd-mockserver = "proxyd.mockserver:main"

[tool.hatch.build.targets.wheel]
packages = ["proxyd"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
ignore_missing_imports = true
