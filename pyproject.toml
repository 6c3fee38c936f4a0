[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "electrum_index"
version = "0.10.9"
description = "Building blocks for an Electrum protocol server: index rows, mempool tracking, status hashes, merkle proofs and a peer-to-peer client"
requires-python = ">=3.10"
dependencies = []
keywords = ["bitcoin", "electrum", "index", "mempool", "merkle", "p2p"]
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
    "Topic :: Internet",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["electrum_index"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
