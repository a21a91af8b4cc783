[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "overlaynet"
version = "0.1.0"
description = "Host networking helpers for overlay networks: iptables masquerade and forward rules, Windows routes, interface discovery and MAC generation"
requires-python = ">=3.10"
keywords = ["networking", "overlay", "iptables", "iptables-restore", "routing", "interfaces", "masquerade"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Operating System :: Microsoft :: Windows",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: System :: Networking :: Firewalls",
]
dependencies = [
    "psutil",
    "tenacity",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["overlaynet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
