[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tinysystemd"
version = "0.1.0"
description = "A small service supervisor with a control client and a start-stop-daemon tool"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "init",
    "service",
    "supervisor",
    "daemon",
    "start-stop-daemon",
    "pidfile",
    "systemctl",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Boot :: Init",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
tinysystemd = "tinysystemd.tinydaemonserver:main"
tinysystemctl = "tinysystemd.systemctl:main"
tinystartstopdaemon = "tinysystemd.ssd:main"
tiny-exe-simple = "tinysystemd.samplesvc:main"
tiny-pipetest = "tinysystemd.pipetest:main"

[tool.hatch.build.targets.wheel]
packages = ["tinysystemd"]

[tool.pytest.ini_options]
addopts = "-ra"
