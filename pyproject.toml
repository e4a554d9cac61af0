[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mutualwatch"
version = "0.1.0"
description = "A mutual watchdog: an application and a partner process keep each other alive and restart whichever side dies."
requires-python = ">=3.10"
dependencies = []
keywords = ["watchdog", "supervisor", "heartbeat", "signals", "process", "restart"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
mutualwatch-wd = "mutualwatch.wd_main:main"

[tool.hatch.build.targets.wheel]
packages = ["mutualwatch"]

[tool.pytest.ini_options]
addopts = "-ra"
