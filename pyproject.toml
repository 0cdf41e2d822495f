[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mesoslib"
version = "0.1.0"
description = "Client-side building blocks for Mesos frameworks: SASL authentication, master detection and slave health checking."
requires-python = ">=3.10"
keywords = ["mesos", "sasl", "cram-md5", "zookeeper", "master-detection", "health-check", "distributed"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mesoslib"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
