[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flowlogs2metrics"
version = "0.1.0"
description = "A flow-log processing pipeline: ingest, transform, aggregate and write network flow records"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "netflow",
    "flow logs",
    "network observability",
    "metrics",
    "aggregation",
    "loki",
    "kafka",
    "pipeline",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["flowlogs2metrics"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
