[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "localmesh"
version = "0.1.0"
description = "Local-only pseudo service mesh: port-forwards cluster services and SSH tunnels behind a local Envoy proxy with host-based routing."
requires-python = ">=3.10"
keywords = [
    "kubernetes",
    "port-forward",
    "envoy",
    "service-mesh",
    "ingress",
    "ssh-tunnel",
    "local-development",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Networking",
]
dependencies = [
    "pyyaml>=6.0",
    "requests>=2.28",
    "websocket-client>=1.5",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[project.scripts]
localmesh = "localmesh.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["localmesh"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
