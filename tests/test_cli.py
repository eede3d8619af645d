import textwrap

import pytest
from click.testing import CliRunner

from pipewright.cli import cli
from pipewright.declaration import load_declaration, loads

DECLARATION = textwrap.dedent(
    """\
    name: Local
    on: [push]
    jobs:
      build:
        name: Build
        runs-on: local
        cache:
          paths: [out]
        steps:
          - uses: actions/checkout@v3
          - name: Compile
            run: test -f README.md && mkdir -p out && echo built > out/app
      lint:
        runs-on: local
        steps:
          - run: echo linted
    """
)


@pytest.fixture
def declaration(tmp_path):
    path = tmp_path / "ci.yml"
    path.write_text(DECLARATION, encoding="utf-8")
    return path


@pytest.fixture
def invoke(tmp_path, source):
    def _invoke(*args):
        base = [
            "run",
            *args,
            "--source", str(source),
            "--cache-dir", str(tmp_path / "cache"),
            "--work-dir", str(tmp_path / "work"),
            "--ref", "refs/heads/main",
            "--sha", "0123456789abcdef0123",
        ]
        return CliRunner().invoke(cli, base)

    return _invoke


def test_run_success(invoke, declaration, tmp_path):
    result = invoke(str(declaration))

    assert result.exit_code == 0, result.output
    assert "PIPELINE: SUCCEEDED" in result.output
    assert "build: SUCCESS" in result.output
    assert list((tmp_path / "cache").glob("build.*.tar.gz"))


def test_run_failure_names_the_failed_job(invoke, tmp_path):
    path = tmp_path / "broken.yml"
    path.write_text(
        DECLARATION.replace("run: echo linted", "run: echo nope && exit 1"),
        encoding="utf-8",
    )

    result = invoke(str(path))

    assert result.exit_code == 1
    assert "PIPELINE: FAILED" in result.output
    assert "lint: FAILURE" in result.output
    assert "build: SUCCESS" in result.output


def test_run_selected_job(invoke, declaration):
    result = invoke(str(declaration), "--job", "lint", "--no-cache")
    assert result.exit_code == 0, result.output
    assert "lint: SUCCESS" in result.output
    assert "build:" not in result.output


def test_run_unknown_job(invoke, declaration):
    result = invoke(str(declaration), "--job", "deploy")
    assert result.exit_code == 2
    assert "unknown job" in result.output


def test_run_event_not_in_triggers(invoke, declaration):
    result = invoke(str(declaration), "--event", "pull_request")
    assert result.exit_code == 2
    assert "not triggered" in result.output


def test_run_invalid_declaration(invoke, tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("on: [push]\njobs:\n  a:\n    needs: b\n    steps:\n      - run: 'true'\n", encoding="utf-8")
    result = invoke(str(path))
    assert result.exit_code == 2
    assert "independent" in result.output


def test_validate_prints_normalized_declaration(declaration):
    result = CliRunner().invoke(cli, ["validate", str(declaration)])
    assert result.exit_code == 0, result.output
    assert loads(result.output) == load_declaration(declaration)


def test_plan_lists_jobs_and_steps(declaration):
    result = CliRunner().invoke(cli, ["plan", str(declaration)])
    assert result.exit_code == 0, result.output
    assert "build (Build) runs-on local" in result.output
    assert "cache: key=<default> paths=out" in result.output
    assert "1. actions/checkout@v3 [uses actions/checkout@v3]" in result.output
    assert "1. Run echo linted [run]" in result.output


@pytest.mark.parametrize("option", ["--timeout", "--grace-period"])
def test_run_rejects_zero_durations(invoke, declaration, option):
    result = invoke(str(declaration), option, "0")
    assert result.exit_code == 2
    assert option in result.output


def test_run_timeout_option_applies(invoke, tmp_path):
    path = tmp_path / "slow.yml"
    path.write_text(DECLARATION.replace("run: echo linted", "run: sleep 30"), encoding="utf-8")

    result = invoke(str(path), "--timeout", "1", "--grace-period", "0.5")

    assert result.exit_code == 1
    assert "lint: CANCELLED" in result.output
    assert "build: SUCCESS" in result.output


def test_run_keeps_tolerated_failures_out_of_the_failed_list(invoke, tmp_path):
    path = tmp_path / "mixed.yml"
    coverage = "  coverage:\n    runs-on: local\n    continue-on-error: true\n    steps:\n      - run: exit 2\n"
    text = DECLARATION.replace("run: echo linted", "run: exit 1") + coverage
    path.write_text(text, encoding="utf-8")

    result = invoke(str(path))

    assert result.exit_code == 1
    assert "1 job(s) did not succeed" in result.output
    assert "coverage: FAILURE" in result.output
    assert "[continue-on-error]" in result.output
    assert "Allowed to fail (continue-on-error): coverage" in result.output
