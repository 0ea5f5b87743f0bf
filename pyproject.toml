[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chronotheus"
version = "0.1.0"
description = "A Prometheus proxy that serves each query across several past time windows, with averages and comparisons"
requires-python = ">=3.10"
dependencies = []
keywords = ["prometheus", "proxy", "metrics", "grafana", "time-series", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
chronotheus = "chronotheus.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["chronotheus"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
