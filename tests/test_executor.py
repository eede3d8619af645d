import os
import threading
import time

import pytest

from pipewright.dsl import sh, uses
from pipewright.errors import StepCancelled, StepFailure, UnknownActionError
from pipewright.executor import CancelToken, StepExecutor


def test_command_output_is_captured(executor, make_env):
    out = executor.execute(sh("Hello", "echo hello; echo oops >&2"), make_env())
    assert out.exit_code == 0
    assert out.stdout == "hello\n"
    assert out.stderr == "oops\n"


def test_non_zero_exit_raises_step_failure_with_output(executor, make_env):
    with pytest.raises(StepFailure) as exc:
        executor.execute(sh("Broken", "echo partial; echo bad >&2; exit 3"), make_env())
    assert exc.value.exit_code == 3
    assert exc.value.step == "Broken"
    assert exc.value.stdout == "partial\n"
    assert exc.value.stderr == "bad\n"


def test_step_env_wins_over_job_env(executor, make_env):
    env = make_env(FOO="job")
    out = executor.execute(sh("Show", 'echo "$FOO"', env={"FOO": "step"}), env)
    assert out.stdout == "step\n"
    out = executor.execute(sh("Show", 'echo "$FOO"'), env)
    assert out.stdout == "job\n"


def test_commands_run_in_the_workspace(executor, make_env):
    env = make_env()
    (env.workspace / "sub").mkdir()
    out = executor.execute(sh("Where", "pwd", cwd="sub"), env)
    assert out.stdout.strip() == str((env.workspace / "sub").resolve())


def test_missing_working_directory_fails(executor, make_env):
    with pytest.raises(StepFailure) as exc:
        executor.execute(sh("Where", "pwd", cwd="missing"), make_env())
    assert exc.value.exit_code == 1


def test_checkout_copies_source_without_git_metadata(executor, make_env):
    env = make_env()
    executor.execute(uses("actions/checkout@v3"), env)
    assert (env.workspace / "README.md").read_text(encoding="utf-8") == "hello\n"
    assert (env.workspace / "Cargo.lock").exists()
    assert not (env.workspace / ".git").exists()


def test_checkout_into_a_subdirectory(executor, make_env):
    env = make_env()
    executor.execute(uses("actions/checkout@v4", path="src"), env)
    assert (env.workspace / "src" / "README.md").exists()


@pytest.mark.parametrize("ref", ["nobody/nothing@v1", "actions/checkout@v99", "Swatinem/rust-cache@v7"])
def test_unresolvable_actions(executor, make_env, ref):
    with pytest.raises(UnknownActionError) as exc:
        executor.execute(uses(ref), make_env())
    assert exc.value.action == ref


def test_toolchain_action_updates_the_job_environment(executor, make_env, fake_tool):
    env = make_env(PATH=f"{fake_tool}{os.pathsep}{os.environ.get('PATH', '')}")

    out = executor.execute(uses("setup-toolchain", tool="mytool"), env)

    assert "mytool 1.2.3" in out.stdout
    assert env.toolchains == {"mytool": "mytool 1.2.3"}
    assert env.path_entries[0] == str(fake_tool)
    assert executor.execute(sh("Use it", "mytool"), env).stdout == "mytool 1.2.3\n"


def test_toolchain_action_missing_tool(executor, make_env):
    with pytest.raises(StepFailure) as exc:
        executor.execute(uses("setup-toolchain", tool="definitely-not-installed-tool"), make_env())
    assert exc.value.exit_code == 127


def test_cache_action_step_is_a_no_op(executor, make_env):
    out = executor.execute(uses("Swatinem/rust-cache@v2"), make_env())
    assert out.exit_code == 0


def test_already_cancelled_token_skips_the_step(executor, make_env, tmp_path):
    token = CancelToken()
    token.cancel("stop")
    marker = tmp_path / "ran"
    with pytest.raises(StepCancelled):
        executor.execute(sh("Touch", f"touch {marker}"), make_env(), token)
    assert not marker.exists()


def test_cancel_stops_a_running_command(executor, make_env):
    token = CancelToken()
    threading.Timer(0.2, token.cancel, args=("job timed out",)).start()

    started = time.monotonic()
    with pytest.raises(StepCancelled) as exc:
        executor.execute(sh("Sleep", "echo started; sleep 30"), make_env(), token)

    assert time.monotonic() - started < 10
    assert exc.value.reason == "job timed out"
    assert exc.value.stdout == "started\n"


def test_process_ignoring_sigterm_is_killed_after_grace_period(make_env):
    executor = StepExecutor(grace_period_s=0.3, poll_interval_s=0.02)
    token = CancelToken()
    threading.Timer(0.2, token.cancel).start()

    started = time.monotonic()
    with pytest.raises(StepCancelled):
        executor.execute(sh("Stubborn", "trap '' TERM; sleep 30; echo done"), make_env(), token)
    assert time.monotonic() - started < 10


def test_sealed_token_refuses_cancel():
    token = CancelToken()
    assert token.seal()
    assert not token.cancel("too late")
    assert not token.is_set()

    cancelled = CancelToken()
    assert cancelled.cancel("first")
    assert not cancelled.cancel("second")
    assert not cancelled.seal()
    assert cancelled.reason == "first"
