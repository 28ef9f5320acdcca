[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vgpushare"
version = "0.1.0"
description = "Helpers for sharing GPU and DCU devices between containers: core-mask allocation, shared-region decoding, utilization feedback, container metrics and DCU plugin bookkeeping."
requires-python = ">=3.10"
dependencies = []
keywords = ["gpu", "dcu", "vgpu", "kubernetes", "device-plugin", "scheduling", "metrics", "prometheus"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vgpushare"]

[tool.pytest.ini_options]
addopts = "-ra"
