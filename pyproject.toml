[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mediarelay"
version = "0.1.0"
description = "Building blocks for a live media relay server: H264/H265 RTP normalisation, logging, external commands and HTTP helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["rtp", "h264", "h265", "streaming", "video", "relay", "logging", "wsgi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mediarelay"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
