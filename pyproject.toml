[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sysalert"
version = "0.1.0"
description = "Alert output channels, event-drop monitoring, metrics snapshots and health endpoints for a runtime security monitor"
requires-python = ">=3.10"
dependencies = []
keywords = ["security", "monitoring", "alerts", "syslog", "metrics", "outputs"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Logging",
    "Topic :: Security",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["sysalert"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
