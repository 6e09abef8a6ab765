[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "aperture"
version = "0.1.0"
description = "L402 macaroons, caveats, tokens, token storage and interceptors, plus an in-memory HashMail mailbox server"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "l402",
    "lsat",
    "macaroon",
    "caveat",
    "authentication",
    "payment",
    "mailbox",
    "hashmail",
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
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Security",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["aperture"]

[tool.hatch.build.targets.sdist]
include = ["aperture", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
