[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kubevip"
version = "0.9.2"
description = "Virtual IP and load-balancer building blocks: iptables control, IPVS backend tracking and service endpoint handling"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "vip", "iptables", "ipvs", "load-balancer", "bgp", "networking"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kubevip"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
