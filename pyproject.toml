[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fernly"
version = "0.1.0"
description = "Host-side USB boot loader for MT6260-family boards: talks to the boot ROM and uploads stage 1, stage 2 and payload images"
requires-python = ">=3.10"
keywords = ["mediatek", "mt6260", "bootrom", "usb", "serial", "loader", "embedded"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
    "Topic :: Terminals :: Serial",
]
dependencies = [
    "pyserial",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
fernly-usb-loader = "fernly.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["fernly"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
