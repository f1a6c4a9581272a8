import io
import tarfile
import threading

import pytest

from matrixci.cache import CacheResolver, FileCacheBackend, MemoryCacheBackend, pack_paths, unpack


def test_fallback_picks_most_recent_prefix_match(cache, clock):
    clock.now = 100.0
    cache.save("ccache_linux_Release_T0", b"t0")
    clock.now = 200.0
    cache.save("ccache_linux_Release_T1", b"t1")

    entry = cache.resolve("ccache_linux_Release_T2", ["ccache_linux_Release"])
    assert entry.key == "ccache_linux_Release_T1"
    assert entry.data == b"t1"

    clock.now = 300.0
    assert cache.save("ccache_linux_Release_T2", b"t2") is True
    assert cache.resolve("ccache_linux_Release_T2", ["ccache_linux_Release"]).key == "ccache_linux_Release_T2"


def test_exact_match_beats_newer_fallback(cache, clock):
    clock.now = 100.0
    cache.save("deps-abc", b"exact")
    clock.now = 500.0
    cache.save("deps-abd", b"newer")

    assert cache.resolve("deps-abc", ["deps-"]).data == b"exact"


def test_prefixes_are_tried_in_declaration_order(cache, clock):
    clock.now = 100.0
    cache.save("gitmodules_linux_old", b"narrow")
    clock.now = 900.0
    cache.save("gitmodules_macos_new", b"broad")

    entry = cache.resolve("gitmodules_linux_sha", ["gitmodules_linux", "gitmodules_"])
    assert entry.data == b"narrow"


def test_identical_timestamps_pick_greatest_key(cache, clock):
    clock.now = 100.0
    cache.save("k-a", b"a")
    cache.save("k-c", b"c")
    cache.save("k-b", b"b")

    assert cache.resolve("k-zzz", ["k-"]).key == "k-c"


def test_miss(cache):
    assert cache.resolve("nothing", ["no"]) is None
    hit = cache.restore("nothing", ["no"])
    assert not hit.hit and not hit.exact and hit.key == ""


def test_save_is_idempotent(cache):
    assert cache.save("key", b"first") is True
    assert cache.save("key", b"second") is False
    assert cache.resolve("key").data == b"first"
    assert cache.backend.keys() == ["key"]


def test_concurrent_saves_of_one_key_write_once(cache):
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def save(n):
        barrier.wait()
        ok = cache.save("lockfile-hash", f"data-{n}".encode())
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=save, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1


def test_pack_and_restore_paths(tmp_path):
    src = tmp_path / "src"
    (src / "ccache" / "a").mkdir(parents=True)
    (src / "ccache" / "a" / "obj.o").write_bytes(b"\x00\x01")
    (src / "ccache" / "stats").write_text("hits=3")

    cache = CacheResolver(MemoryCacheBackend())
    assert cache.save_paths("ccache_T0", ["ccache", "missing-dir"], root=src) is True

    dest = tmp_path / "dest"
    dest.mkdir()
    hit = cache.restore("ccache_T0", root=dest)

    assert hit.hit and hit.exact
    assert (dest / "ccache" / "a" / "obj.o").read_bytes() == b"\x00\x01"
    assert (dest / "ccache" / "stats").read_text() == "hits=3"


def test_save_paths_skips_existing_key(tmp_path):
    (tmp_path / "f").write_text("x")
    cache = CacheResolver(MemoryCacheBackend())
    assert cache.save_paths("k", ["f"], root=tmp_path) is True
    (tmp_path / "f").write_text("changed")
    assert cache.save_paths("k", ["f"], root=tmp_path) is False


def test_unpack_refuses_escaping_paths(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        data = b"evil"
        info = tarfile.TarInfo("../evil.txt")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))

    with pytest.raises(ValueError, match="unsafe path"):
        unpack(buf.getvalue(), tmp_path / "root")
    assert not (tmp_path / "evil.txt").exists()


def test_pack_rejects_paths_outside_workspace_and_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    outside = tmp_path / "elsewhere"
    outside.mkdir()
    (outside / "f").write_text("x")

    with pytest.raises(ValueError, match="outside the workspace"):
        pack_paths([str(outside)], root=tmp_path / "ws")


def test_file_backend_persists_across_instances(tmp_path, clock):
    root = tmp_path / "cache"
    clock.now = 100.0
    first = CacheResolver(FileCacheBackend(root, clock=clock))
    first.save("gitmodules_linux/old", b"old")
    clock.now = 200.0
    first.save("gitmodules_linux/new", b"new")

    second = CacheResolver(FileCacheBackend(root))
    assert second.backend.keys() == ["gitmodules_linux/new", "gitmodules_linux/old"]
    assert second.resolve("gitmodules_linux/sha", ["gitmodules_linux/"]).data == b"new"
    assert second.save("gitmodules_linux/new", b"other") is False
    assert second.resolve("gitmodules_linux/new").data == b"new"
