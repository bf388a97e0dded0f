[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "topsqlkit"
version = "0.1.0"
description = "Top SQL storage, top-K aggregation and query service over a time-series backend"
requires-python = ">=3.10"
dependencies = []
keywords = ["monitoring", "top-sql", "metrics", "time-series", "observability", "wsgi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["topsqlkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
