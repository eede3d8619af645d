# Python equivalent of ci.yml's fmt/clippy jobs, built with the DSL.
from __future__ import annotations

from pipewright import job, pipeline, sh, uses


def _rust_job(job_id: str, name: str, command: str, components: str | None = None):
    toolchain = uses("dtolnay/rust-toolchain@stable", name="Install Rust toolchain", **(
        {"components": components} if components else {}
    ))
    return job(
        job_id,
        uses("actions/checkout@v3", name="Checkout repository"),
        toolchain,
        uses("Swatinem/rust-cache@v2"),
        sh(name, command),
        name=name,
    )


def workflow():
    return pipeline(
        _rust_job("fmt", "Check formatting", "cargo fmt --all -- --check", components="rustfmt"),
        _rust_job("clippy", "Linting", "cargo clippy -- -D warnings", components="clippy"),
        name="CI (python)",
        env={"CARGO_TERM_COLOR": "always"},
    )
