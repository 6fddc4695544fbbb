[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "storytape"
version = "0.1.0"
description = "Device-side logic for a voice-recording storybook: chunked capture, cloud upload, chapter playback and pairing."
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = [
    "audio",
    "recording",
    "pcm",
    "upload",
    "playback",
    "pairing",
    "storytelling",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Sound/Audio :: Capture/Recording",
    "Topic :: Multimedia :: Sound/Audio :: Players",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["storytape"]

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
