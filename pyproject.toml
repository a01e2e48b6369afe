[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kubenetpol"
version = "0.1.0"
description = "Kubernetes NetworkPolicy enforcement through iptables chains and ipsets"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "networkpolicy", "iptables", "ipset", "firewall"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Firewalls",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kubenetpol"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
