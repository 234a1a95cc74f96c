"""Shared fixtures for the varhunter test suite."""

from textwrap import dedent

import pytest

from php_varscan import AnalyzerConfig, Severity, VariableAnalyzer


class Diagnostics:
    """Sorted (line, column, message) triples of one analysis run."""

    def __init__(self, report):
        self.report = report
        self.warnings = report.messages(Severity.WARNING)
        self.errors = report.messages(Severity.ERROR)


@pytest.fixture
def analyze():
    """analyze(code, config=None) -> Diagnostics; code is dedented first."""
    def run(code: str, config: AnalyzerConfig = None) -> Diagnostics:
        source = dedent(code).lstrip("\n")
        return Diagnostics(VariableAnalyzer(config).analyze_source(source))
    return run


@pytest.fixture
def php_tree(tmp_path):
    """Write {relative path: php source} into tmp_path and return it."""
    def build(files):
        for rel, code in files.items():
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(dedent(code).lstrip("\n"), encoding="utf-8")
        return tmp_path
    return build
