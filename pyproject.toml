[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kubenode"
version = "0.1.0"
description = "Building blocks for keeping a virtual cluster node alive: ping monitoring, lease renewal, three-way node status patches and stats summary types"
requires-python = ">=3.10"
keywords = ["kubernetes", "kubelet", "virtual-node", "lease", "strategic-merge-patch", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Framework :: AsyncIO",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Typing :: Typed",
]
dependencies = []

[project.optional-dependencies]
test = [
    "pytest>=7",
    "pytest-asyncio>=0.21",
]

[tool.hatch.build.targets.wheel]
packages = ["kubenode"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
