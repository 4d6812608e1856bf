"""Nox sessions for testing fluxbatch across multiple Python versions."""

import nox

nox.options.default_venv_backend = "uv"
PYTHON_VERSIONS = ["3.10", "3.11", "3.12", "3.13"]
DEFAULT_PYTHON_VERSION = "3.12"

nox.options.reuse_existing_virtualenvs = True
nox.options.sessions = ["tests", "lint"]

SOURCES = ["src/", "tests/", "examples/", "noxfile.py"]


@nox.session(python=PYTHON_VERSIONS)
def tests(session: nox.Session) -> None:
    """Run the test suite with pytest."""
    session.install("-e", ".[test]")
    session.run("pytest", "tests/", "-v", *session.posargs)


@nox.session(python=DEFAULT_PYTHON_VERSION)
def coverage(session: nox.Session) -> None:
    """Run tests with a coverage report."""
    session.install("-e", ".[test]")
    session.run(
        "pytest",
        "tests/",
        "--cov=src/fluxbatch",
        "--cov-report=html",
        "--cov-report=term-missing",
    )


@nox.session(python=DEFAULT_PYTHON_VERSION)
def lint(session: nox.Session) -> None:
    """Run Ruff and Black in check mode."""
    session.install("ruff", "black")
    session.run("ruff", "check", *SOURCES)
    session.run("black", "--check", *SOURCES)


@nox.session(python=DEFAULT_PYTHON_VERSION)
def type_check(session: nox.Session) -> None:
    """Run mypy over the package."""
    session.install("mypy")
    session.install("-e", ".")
    session.run("mypy", "src/")


@nox.session(python=DEFAULT_PYTHON_VERSION)
def format(session: nox.Session) -> None:
    """Format code with Ruff and Black."""
    session.install("ruff", "black")
    session.run("ruff", "check", "--fix", *SOURCES)
    session.run("black", *SOURCES)
