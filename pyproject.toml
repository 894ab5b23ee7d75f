[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sqlitetools"
version = "0.1.0"
description = "Helpers for sqlite3: statement execution, savepoints, transactions, connection pools and schema migrations"
requires-python = ">=3.11"
dependencies = []
keywords = ["sqlite", "sqlite3", "database", "migration", "pool", "transaction", "savepoint"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["sqlitetools"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
