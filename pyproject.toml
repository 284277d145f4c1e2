[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "itsjustintv"
version = "0.3.0"
description = "Building blocks for a Twitch EventSub webhook bridge: configuration, config reloading, deduplication cache, output log and retry queue."
requires-python = ">=3.11"
dependencies = [
    "watchdog",
]
keywords = ["twitch", "eventsub", "webhook", "bridge", "retry", "deduplication", "toml"]
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
    "Topic :: Internet :: WWW/HTTP",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["itsjustintv"]

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
