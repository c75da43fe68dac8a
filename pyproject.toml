[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "genkd"
version = "0.1.0"
description = "Build firmware images (kdimage, vfat, ubi, ubifs, uffs, squashfs, tar, rauc, qemu) from partition descriptions"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "firmware",
    "image",
    "kdimage",
    "mbr",
    "partition",
    "ubi",
    "ubifs",
    "vfat",
    "squashfs",
    "embedded",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
    "Topic :: System :: Archiving :: Packaging",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["genkd"]

[tool.pytest.ini_options]
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
