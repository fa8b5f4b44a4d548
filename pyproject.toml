[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "covtrace"
version = "0.1.0"
description = "Coverage trace bookkeeping and test-process state machines for line, branch and condition coverage"
requires-python = ">=3.10"
dependencies = []
keywords = ["coverage", "tracing", "ptrace", "testing", "instrumentation", "breakpoints"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["covtrace"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
