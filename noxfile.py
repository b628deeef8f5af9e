"""Nox sessions for the gatekeeper bot."""

import nox

nox.options.sessions = ["tests", "lint"]
PYTHON = "3.11"
COVERAGE_TARGETS = ["--cov=gatekeeper", "--cov=bots"]


@nox.session(python=PYTHON)
def tests(session):
    """Run the suite with coverage of both packages."""
    session.install("-e", ".[dev]")
    session.run(
        "pytest",
        *COVERAGE_TARGETS,
        "--cov-report=term-missing",
        "--cov-fail-under=80",
        *session.posargs,
    )


@nox.session(python=PYTHON)
def lint(session):
    session.install("ruff>=0.1.0")
    session.run("ruff", "check", "gatekeeper", "bots", "tests")
    session.run("ruff", "format", "--check", "gatekeeper", "bots", "tests")


@nox.session(python=PYTHON)
def coverage_report(session):
    """Branch coverage as HTML and XML, for CI upload."""
    session.install("-e", ".[dev]")
    session.run(
        "pytest",
        *COVERAGE_TARGETS,
        "--cov-branch",
        "--cov-report=html:htmlcov",
        "--cov-report=xml:coverage.xml",
        "--tb=short",
    )
    session.log("Coverage report generated in htmlcov/")


@nox.session(python=PYTHON)
def test_single(session):
    """Run one test file or test id, e.g. ``nox -s test_single -- tests/test_machine.py``."""
    if not session.posargs:
        session.error("Please provide a test file or test id to run")
    session.install("-e", ".[dev]")
    session.run("pytest", "-v", *session.posargs)
