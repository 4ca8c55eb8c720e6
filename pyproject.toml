[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mq-bridge"
version = "0.1.0"
description = "Route messages between queue endpoints through composable middlewares"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "messaging",
    "message-queue",
    "bridge",
    "middleware",
    "dead-letter-queue",
    "retry",
    "deduplication",
    "asyncio",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "pyyaml",
]

[tool.hatch.build.targets.wheel]
packages = ["mq_bridge"]

[tool.hatch.build.targets.sdist]
include = [
    "mq_bridge",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
