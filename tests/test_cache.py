import io
import os
import tarfile

import pytest

from pipewright.cache import CacheGate, FileCacheStorage, MemoryCacheStorage, pack_paths, unpack_into
from pipewright.dsl import sh, uses
from pipewright.errors import CacheWriteError


class BrokenStorage(MemoryCacheStorage):
    def put(self, key, data):
        raise OSError("disk full")


@pytest.fixture
def cached_job(make_job):
    return make_job("build", sh("Build", "make"), cache_paths=["target"])


def _fill(workspace, text="artifact\n"):
    (workspace / "target" / "debug").mkdir(parents=True, exist_ok=True)
    (workspace / "target" / "debug" / "app").write_text(text, encoding="utf-8")
    (workspace / "target" / "stamp").write_text("1\n", encoding="utf-8")


def test_key_is_deterministic_and_prefixed_with_job_id(gate, cached_job, make_env):
    key = gate.key_for(cached_job, make_env("a"))
    assert key == gate.key_for(cached_job, make_env("b"))
    assert key.startswith("build.")


def test_default_key_follows_lock_files(gate, cached_job, make_env, source):
    env = make_env()
    before = gate.key_for(cached_job, env)
    (source / "Cargo.lock").write_text("lock v2\n", encoding="utf-8")
    assert gate.key_for(cached_job, env) != before


def test_default_key_follows_step_definitions(gate, make_job, make_env):
    env = make_env()
    one = make_job("build", sh("Build", "make"), cache_paths=["target"])
    two = make_job("build", sh("Build", "make all"), cache_paths=["target"])
    assert gate.key_for(one, env) != gate.key_for(two, env)


def test_explicit_key_template(gate, make_job, make_env, source):
    job = make_job("build", sh("Build", "make"), cache_key="${{ runner.os }}-v1", cache_paths=["target"])
    env = make_env()
    assert gate.key_for(job, env) == f"build.{env.runner_os}-v1"


def test_cache_action_step_configures_the_job(gate, make_job, make_env):
    job = make_job("test", uses("Swatinem/rust-cache@v2"), sh("Test", "cargo test"))
    config = gate.config_for(job)
    assert config is not None
    assert config.paths == ("target",)


def test_job_without_cache_config_is_skipped(gate, make_job, make_env):
    job = make_job("lint", sh("Lint", "true"))
    env = make_env()
    assert gate.restore(job, env) is None
    assert gate.snapshot(job, env) is None


def test_save_then_restore_gives_identical_bytes(gate, cached_job, make_env):
    first = make_env("first")
    _fill(first.workspace)
    entry = gate.snapshot(cached_job, first)
    gate.save(cached_job, entry)

    second = make_env("second")
    restored = gate.restore(cached_job, second)

    assert restored is not None
    assert restored.key == entry.key
    assert restored.data == entry.data
    assert (second.workspace / "target" / "debug" / "app").read_text(encoding="utf-8") == "artifact\n"
    assert gate.save_attempts == ["build"]


def test_restore_from_empty_store_is_a_miss(gate, cached_job, make_env):
    assert gate.restore(cached_job, make_env()) is None


def test_corrupt_entry_is_a_miss(gate, storage, cached_job, make_env):
    env = make_env()
    storage.put(gate.key_for(cached_job, env), b"not a tarball")
    assert gate.restore(cached_job, env) is None
    assert list(env.workspace.iterdir()) == []


def test_failing_storage_raises_cache_write_error(cached_job, make_env):
    gate = CacheGate(BrokenStorage())
    env = make_env()
    _fill(env.workspace)
    entry = gate.snapshot(cached_job, env)
    with pytest.raises(CacheWriteError, match="disk full"):
        gate.save(cached_job, entry)
    assert gate.save_attempts == ["build"]


def test_pack_is_reproducible(make_env):
    env = make_env()
    _fill(env.workspace)
    assert pack_paths(env.workspace, ("target",)) == pack_paths(env.workspace, ("target",))


def test_pack_skips_paths_outside_the_workspace(make_env, tmp_path):
    env = make_env()
    (tmp_path / "secret").write_text("x", encoding="utf-8")
    data = pack_paths(env.workspace, ("../secret", str(tmp_path / "secret")))
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        assert tar.getnames() == []


def test_unpack_ignores_members_escaping_the_workspace(make_env):
    env = make_env()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name in ("ok.txt", "../escaped.txt"):
            payload = name.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))

    assert unpack_into(env.workspace, buf.getvalue()) == 1
    assert (env.workspace / "ok.txt").exists()
    assert not (env.workspace.parent / "escaped.txt").exists()


def test_file_storage_round_trip(tmp_path):
    store = FileCacheStorage(tmp_path / "cache")
    assert store.get("build.abc") is None
    store.put("build.abc", b"payload")
    assert store.get("build.abc") == b"payload"
    assert store.path_for("build.a/b c").name == "build.a_b_c.tar.gz"


def test_file_storage_prune_keeps_newest_entries_of_one_job(tmp_path):
    store = FileCacheStorage(tmp_path / "cache")
    for i, key in enumerate(["build.a", "build.b", "build.c", "build.d"]):
        store.put(key, key.encode())
        os.utime(store.path_for(key), (1_000_000 + i, 1_000_000 + i))
    store.put("build-release.x", b"other job")

    store.prune("build", keep=2)

    assert store.get("build.a") is None
    assert store.get("build.b") is None
    assert store.get("build.c") == b"build.c"
    assert store.get("build.d") == b"build.d"
    assert store.get("build-release.x") == b"other job"


def test_keep_must_be_at_least_one():
    with pytest.raises(ValueError, match="at least 1"):
        CacheGate(MemoryCacheStorage(), keep=0)


def test_keep_one_retains_the_entry_just_saved(tmp_path, cached_job, make_env):
    gate = CacheGate(FileCacheStorage(tmp_path / "cache"), keep=1)
    env = make_env()
    _fill(env.workspace)
    entry = gate.snapshot(cached_job, env)
    gate.save(cached_job, entry)

    assert gate.restore(cached_job, make_env("again")) is not None
