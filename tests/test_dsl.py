import pytest

from pipewright.dsl import build, job, matrix, pipeline, sh, uses, wf
from pipewright.errors import DeclarationError
from pipewright.model import CacheConfig


def test_job_helper_applies_default_working_directory():
    j = job("test", uses("actions/checkout@v3"), sh("Test", "pytest", cwd="pkg"), sh("Lint", "ruff check ."), cwd="src")
    assert j.steps[0].working_directory is None
    assert j.steps[1].working_directory == "pkg"
    assert j.steps[2].working_directory == "src"


def test_job_helper_cache_block():
    j = job("test", sh("Test", "pytest"), cache_key="py-${{ hashFiles('uv.lock') }}", cache_paths=[".venv"])
    assert j.cache == CacheConfig(key="py-${{ hashFiles('uv.lock') }}", paths=(".venv",))


def test_job_helper_requires_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_builder():
    j = (
        build("docs")
        .named("Docs")
        .runs_on("ubuntu-22.04")
        .use_action("actions/checkout@v3")
        .define_step("Build docs", "cargo doc --no-deps", RUSTDOCFLAGS="-D warnings")
        .with_env(CARGO_TERM_COLOR="always")
        .timeout(30)
        .allow_failure()
        .cache("target")
        .build()
    )
    assert j.display_name == "Docs"
    assert j.runs_on == "ubuntu-22.04"
    assert j.steps[1].env == {"RUSTDOCFLAGS": "-D warnings"}
    assert j.env == {"CARGO_TERM_COLOR": "always"}
    assert j.timeout_minutes == 30
    assert j.continue_on_error is True
    assert j.cache == CacheConfig(paths=("target",))


def test_builder_without_steps():
    with pytest.raises(ValueError):
        build("nothing").build()


def test_matrix_jobs_are_flattened():
    jobs = wf(
        job("fmt", sh("Fmt", "cargo fmt --check")),
        matrix("toolchain", ["stable", "beta"]).jobs(
            lambda v: job(f"test-{v}", uses(f"dtolnay/rust-toolchain@{v}"), sh("Test", "cargo test"))
        ),
    )
    assert [j.id for j in jobs] == ["fmt", "test-stable", "test-beta"]


def test_pipeline_helper():
    p = pipeline(job("a", sh("A", "true")), name="CI", on=["push"], env={"DEBUG": 1})
    assert p.name == "CI"
    assert p.triggers == {"push": None}
    assert p.env == {"DEBUG": "1"}


def test_pipeline_helper_rejects_duplicate_ids():
    with pytest.raises(DeclarationError):
        pipeline(job("a", sh("A", "true")), job("a", sh("B", "true")))
