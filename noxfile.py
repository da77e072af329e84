from __future__ import annotations

import nox

nox.options.default_venv_backend = "virtualenv"
nox.options.error_on_missing_interpreters = False
nox.options.sessions = ["tests", "lint", "typecheck"]

PYTHON_VERSIONS = ["3.10", "3.11", "3.12"]


def _install_dev(session: nox.Session) -> None:
    session.install("-e", ".[dev]")


@nox.session(python=PYTHON_VERSIONS)
def tests(session: nox.Session) -> None:
    _install_dev(session)
    args = session.posargs or ["--cov=tasksync", "--cov-report=term-missing", "--cov-report=xml"]
    session.run("pytest", *args)


@nox.session
def lint(session: nox.Session) -> None:
    _install_dev(session)
    session.run("ruff", "check", "src", "tests", "noxfile.py")


@nox.session
def typecheck(session: nox.Session) -> None:
    _install_dev(session)
    session.run("mypy")


@nox.session
def security(session: nox.Session) -> None:
    _install_dev(session)
    session.run("bandit", "-q", "-r", "src/tasksync")


@nox.session
def build(session: nox.Session) -> None:
    _install_dev(session)
    session.run("python", "-m", "build", "--outdir", "dist")
