[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "meshpub"
version = "0.1.0"
description = "Peer scoring, message signing and subscriptions for mesh-based publish/subscribe networks"
requires-python = ">=3.10"
keywords = ["pubsub", "gossip", "peer-scoring", "p2p", "mesh", "signatures"]
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
    "Topic :: System :: Networking",
    "Typing :: Typed",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["meshpub"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
