[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hegelrun"
version = "0.2.6"
description = "Property-based test runner that drives a Hegel server over a packet protocol"
requires-python = ">=3.10"
keywords = ["testing", "property-based-testing", "fuzzing", "stateful-testing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: POSIX",
    "Topic :: Software Development :: Testing",
]
dependencies = [
    "cbor2",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["hegelrun"]

[tool.pytest.ini_options]
addopts = "-ra"
