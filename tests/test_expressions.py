import pytest

from pipewright.errors import DeclarationError
from pipewright.expressions import ExpressionContext, hash_files, render, validate
from pipewright.model import Event


@pytest.fixture
def ctx(source):
    return ExpressionContext(
        root=source,
        runner_os="Linux",
        job="test",
        event=Event(ref="refs/heads/main", sha="deadbeef", kind="push"),
        env={"TOOLCHAIN": "stable"},
    )


def test_render_context_values(ctx):
    assert render("${{ runner.os }}-${{ github.job }}", ctx) == "Linux-test"
    assert render("${{ github.ref }}@${{ github.sha }}", ctx) == "refs/heads/main@deadbeef"
    assert render("${{ github.event_name }}", ctx) == "push"
    assert render("rust-${{ env.TOOLCHAIN }}", ctx) == "rust-stable"
    assert render("${{ env.MISSING }}", ctx) == ""
    assert render("plain-key", ctx) == "plain-key"


def test_hash_files_tracks_file_contents(ctx, source):
    before = render("${{ hashFiles('**/Cargo.lock') }}", ctx)
    assert before == render("${{ hashFiles('**/Cargo.lock') }}", ctx)
    assert len(before) == 64

    (source / "Cargo.lock").write_text("lock v2\n", encoding="utf-8")
    assert render("${{ hashFiles('**/Cargo.lock') }}", ctx) != before


def test_hash_files_without_matches_is_empty(source):
    assert hash_files(source, ["**/poetry.lock"]) == ""


def test_hash_files_skips_git_metadata(source):
    assert hash_files(source, ["**/HEAD"]) == ""


def test_hash_files_accepts_several_patterns(ctx, source):
    both = render("${{ hashFiles('**/Cargo.lock', 'README.md') }}", ctx)
    one = render("${{ hashFiles('**/Cargo.lock') }}", ctx)
    assert both != one


def test_unsupported_expression(ctx):
    with pytest.raises(DeclarationError, match="unsupported expression"):
        render("${{ secrets.TOKEN }}", ctx)


def test_validate():
    validate("${{ runner.os }}-cargo-${{ hashFiles('**/Cargo.lock') }}")
    validate("${{ env.ANYTHING }}")
    with pytest.raises(DeclarationError):
        validate("${{ hashFiles() }}")
    with pytest.raises(DeclarationError):
        validate("${{ matrix.os }}")
