[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "infrahooks"
version = "0.1.0"
description = "Building blocks for GitHub webhook relays, CloudEvent recorders and GitHub bots"
requires-python = ">=3.10"
keywords = [
    "github",
    "webhooks",
    "cloudevents",
    "bots",
    "check-runs",
    "rate-limiting",
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
infrahooks-recorder = "infrahooks.recorder:main"

[tool.hatch.build.targets.wheel]
packages = ["infrahooks"]

[tool.hatch.build.targets.sdist]
include = [
    "infrahooks",
    "tests",
    "pyproject.toml",
]

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
