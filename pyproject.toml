[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "polaris"
version = "0.1.0"
description = "Lightweight DNS-over-HTTPS resolver with recursive and forwarding modes and a built-in domain filter"
requires-python = ">=3.11"
keywords = ["dns", "doh", "dns-over-https", "resolver", "rfc8484", "filter", "blocklist"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: No Input/Output (Daemon)",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
]
dependencies = [
    "dnspython>=2.4",
    "aiohttp>=3.9",
    "idna>=3.4",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
polaris = "polaris.app:main"

[tool.hatch.build.targets.wheel]
packages = ["polaris"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
