[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "penbalance"
version = "0.35.0"
description = "Building blocks of a TCP/UDP load balancer (access lists, client and connection tables, readiness polling, direct server return frame handling) and a web log merger"
requires-python = ">=3.10"
dependencies = []
keywords = ["load balancer", "proxy", "acl", "direct server return", "access logs"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Internet :: Log Analysis",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
penbalance-mergelogs = "penbalance.mergelogs:main"

[tool.hatch.build.targets.wheel]
packages = ["penbalance"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
