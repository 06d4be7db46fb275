[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "berghain"
version = "0.1.0"
description = "A door-policy simulation game: an HTTP game server with correlated patrons, a greedy client, a generator check and a sequence analyzer"
requires-python = ">=3.10"
dependencies = [
    "redis",
]
keywords = ["game", "simulation", "probability", "correlation", "door policy"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Games/Entertainment :: Simulation",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
berghain-server = "berghain.server:main"
berghain-check = "berghain.check:main"
berghain-greed = "berghain.greed:main"
berghain-analyze = "berghain.analyze:main"

[tool.hatch.build.targets.wheel]
packages = ["berghain"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
