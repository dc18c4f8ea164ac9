[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kaddht"
version = "0.1.0"
description = "Building blocks of a Kademlia distributed hash table: lookup peer sets, network size estimation, routing table refresh and the wire protocol."
requires-python = ">=3.10"
dependencies = []
keywords = ["kademlia", "dht", "p2p", "peer-to-peer", "routing"]
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
    "Topic :: System :: Networking",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[tool.hatch.build.targets.wheel]
packages = ["kaddht"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
