[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pipekit"
version = "0.1.0"
description = "Functions-pipeline runtime for application services: topic routing, message decoding, store-and-forward retries, context values and encrypt-then-MAC sealing."
requires-python = ">=3.10"
keywords = ["pipeline", "message-bus", "edge", "store-and-forward", "aead", "cbor"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]
dependencies = [
    "cryptography",
    "cbor2",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["pipekit"]

[tool.pytest.ini_options]
addopts = "-ra"
