[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "schemashift"
version = "4.0.0"
description = "Database schema migrations: read versioned up/down migrations from a source driver and apply them to a database driver."
requires-python = ">=3.10"
dependencies = []
keywords = ["migrations", "database", "schema", "versioning"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
schemashift = "schemashift.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["schemashift"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
