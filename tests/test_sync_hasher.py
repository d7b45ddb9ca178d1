"""Tests for the hash engine, ignore rules and the tree-hash cache."""

import hashlib
import json
import os
import time

import pytest

from upstream_sync.core.async_utils import WorkerPool
from upstream_sync.errors import NotAFileError
from upstream_sync.sync.cache import TreeHashCache, cache_key
from upstream_sync.sync.hasher import HashEngine, walk_files
from upstream_sync.sync.ignore import IgnoreRules, load_ignore_file


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _make_tree(root):
    files = {
        "a.txt": b"alpha",
        "sub/b.txt": b"beta",
        "sub/deep/c.bin": b"\x00\x01\x02",
        "node_modules/pkg/index.js": b"ignored",
        "build/out.o": b"ignored",
    }
    for rel, data in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return files


# ---------------------------------------------------------------------------
# IgnoreRules
# ---------------------------------------------------------------------------


class TestIgnoreRules:
    def test_double_star_matches_top_level(self):
        rules = IgnoreRules(["**/node_modules/**"])
        assert rules.matches("node_modules", is_dir=True)
        assert rules.matches("node_modules/pkg/index.js")
        assert rules.matches("src/node_modules", is_dir=True)
        assert not rules.matches("src/modules.js")

    def test_plain_glob(self):
        rules = IgnoreRules(["*.log"])
        assert rules.matches("debug.log")
        assert not rules.matches("debug.txt")

    def test_order_independent(self):
        assert IgnoreRules(["b", "a", "a"]).patterns == ("a", "b")

    def test_empty_path_never_matches(self):
        assert not IgnoreRules(["*"]).matches("")

    def test_for_root_reads_syncignore(self, tmp_path):
        (tmp_path / ".syncignore").write_text("# comment\n\n*.tmp\n")
        rules = IgnoreRules.for_root(tmp_path, extra=["secret/**"])
        assert rules.matches("scratch.tmp")
        assert rules.matches("secret/key.pem")
        assert rules.matches("dist", is_dir=True)

    def test_for_root_without_defaults(self, tmp_path):
        rules = IgnoreRules.for_root(tmp_path, use_defaults=False)
        assert not rules.matches("dist", is_dir=True)

    def test_load_ignore_file_missing(self, tmp_path):
        assert load_ignore_file(tmp_path / ".syncignore") == []


# ---------------------------------------------------------------------------
# walk_files
# ---------------------------------------------------------------------------


class TestWalkFiles:
    def test_prunes_ignored(self, tmp_path):
        _make_tree(tmp_path)
        rules = IgnoreRules.for_root(tmp_path)
        assert sorted(walk_files(tmp_path, rules)) == ["a.txt", "sub/b.txt", "sub/deep/c.bin"]

    def test_links_only_on_request(self, tmp_path):
        _make_tree(tmp_path)
        (tmp_path / "link.txt").symlink_to("a.txt")
        (tmp_path / "linkdir").symlink_to("sub", target_is_directory=True)
        rules = IgnoreRules.for_root(tmp_path)
        assert "link.txt" not in walk_files(tmp_path, rules)
        with_links = walk_files(tmp_path, rules, include_links=True)
        assert "link.txt" in with_links
        assert "linkdir" in with_links
        # Linked directories are never descended into.
        assert "linkdir/b.txt" not in with_links


# ---------------------------------------------------------------------------
# HashEngine
# ---------------------------------------------------------------------------


class TestHashFile:
    def test_digest(self, tmp_path):
        f = tmp_path / "f.bin"
        f.write_bytes(b"hello")
        assert HashEngine().hash_file(f) == _sha(b"hello")

    def test_streaming_matches_whole_read(self, tmp_path):
        data = os.urandom(100_000)
        f = tmp_path / "big.bin"
        f.write_bytes(data)
        assert HashEngine(buffer_size=1000).hash_file(f) == _sha(data)

    def test_empty_file(self, tmp_path):
        f = tmp_path / "empty"
        f.write_bytes(b"")
        assert HashEngine().hash_file(f) == _sha(b"")

    def test_directory_rejected(self, tmp_path):
        with pytest.raises(NotAFileError):
            HashEngine().hash_file(tmp_path)

    def test_same_bytes_same_digest(self, tmp_path):
        (tmp_path / "x").write_bytes(b"same")
        (tmp_path / "y").write_bytes(b"same")
        engine = HashEngine()
        assert engine.hash_file(tmp_path / "x") == engine.hash_file(tmp_path / "y")


class TestHashTree:
    async def test_keys_are_relative_posix(self, tmp_path):
        files = _make_tree(tmp_path)
        result = await HashEngine(WorkerPool(3)).hash_tree(tmp_path, IgnoreRules.for_root(tmp_path))
        assert result == {
            rel: _sha(data)
            for rel, data in files.items()
            if not rel.startswith(("node_modules", "build"))
        }

    async def test_ignore_as_pattern_list(self, tmp_path):
        _make_tree(tmp_path)
        result = await HashEngine().hash_tree(tmp_path, ["sub/**", "**/node_modules/**", "build/**"])
        assert list(result) == ["a.txt"]

    async def test_symlinks_not_hashed(self, tmp_path):
        (tmp_path / "real.txt").write_text("x")
        (tmp_path / "link.txt").symlink_to("real.txt")
        result = await HashEngine().hash_tree(tmp_path)
        assert list(result) == ["real.txt"]

    async def test_reuses_given_listing(self, tmp_path, monkeypatch):
        (tmp_path / "real.txt").write_text("x")
        (tmp_path / "link.txt").symlink_to("real.txt")
        (tmp_path / "linked_dir").symlink_to(tmp_path)
        engine = HashEngine()
        listing = walk_files(tmp_path, IgnoreRules(), include_links=True)

        def _no_walk(*args, **kwargs):
            raise AssertionError("tree walked twice")

        monkeypatch.setattr(engine, "list_files", _no_walk)
        result = await engine.hash_tree(tmp_path, files=listing)
        assert result == {"real.txt": _sha(b"x")}

    async def test_root_must_be_directory(self, tmp_path):
        f = tmp_path / "f"
        f.write_text("x")
        with pytest.raises(NotAFileError):
            await HashEngine().hash_tree(f)

    async def test_independent_of_concurrency(self, tmp_path):
        _make_tree(tmp_path)
        one = await HashEngine(WorkerPool(1)).hash_tree(tmp_path)
        many = await HashEngine(WorkerPool(8)).hash_tree(tmp_path)
        assert one == many


# ---------------------------------------------------------------------------
# TreeHashCache
# ---------------------------------------------------------------------------


class TestTreeHashCache:
    def test_key_ignores_pattern_order(self, tmp_path):
        assert cache_key(tmp_path, ["a", "b"]) == cache_key(tmp_path, ["b", "a", "a"])
        assert cache_key(tmp_path, ["a"]) != cache_key(tmp_path, ["b"])

    def test_miss_then_hit(self, tmp_path):
        cache = TreeHashCache(tmp_path / "cache")
        assert cache.lookup(tmp_path, []) is None
        entry = {"digest": "d", "size": 1, "mtime_ns": 2}
        cache.store(tmp_path, [], {"a.txt": entry})
        assert cache.lookup(tmp_path, []) == {"a.txt": entry}

    def test_expired_entry_deleted(self, tmp_path):
        cache = TreeHashCache(tmp_path / "cache", expiry_days=1)
        cache.store(tmp_path, [], {})
        entry = next((tmp_path / "cache").glob("*.json"))
        old = time.time() - 2 * 86400
        os.utime(entry, (old, old))
        assert cache.lookup(tmp_path, []) is None
        assert not entry.exists()

    def test_corrupt_entry_is_a_miss(self, tmp_path):
        cache = TreeHashCache(tmp_path / "cache")
        cache.store(tmp_path, [], {})
        next((tmp_path / "cache").glob("*.json")).write_text("{not json")
        assert cache.lookup(tmp_path, []) is None

    def test_clear(self, tmp_path):
        cache = TreeHashCache(tmp_path / "cache")
        cache.store(tmp_path, ["a"], {})
        cache.store(tmp_path, ["b"], {})
        assert cache.clear() == 2
        assert cache.clear() == 0

    async def test_engine_reuses_unchanged_digests(self, tmp_path):
        root = tmp_path / "tree"
        _make_tree(root)
        cache = TreeHashCache(tmp_path / "cache")

        first = HashEngine(cache=cache)
        digests = await first.hash_tree(root, IgnoreRules.for_root(root))
        assert first.cache_hits == 0

        second = HashEngine(cache=cache)
        assert await second.hash_tree(root, IgnoreRules.for_root(root)) == digests
        assert second.cache_hits == 3
        assert second.files_hashed == 0

    async def test_changed_file_rehashed(self, tmp_path):
        root = tmp_path / "tree"
        _make_tree(root)
        cache = TreeHashCache(tmp_path / "cache")
        await HashEngine(cache=cache).hash_tree(root)

        (root / "a.txt").write_bytes(b"alpha, longer now")
        engine = HashEngine(cache=cache)
        result = await engine.hash_tree(root)
        assert result["a.txt"] == _sha(b"alpha, longer now")
        assert engine.files_hashed == 1

    def test_store_format(self, tmp_path):
        cache = TreeHashCache(tmp_path / "cache")
        cache.store(tmp_path, ["b", "a"], {})
        data = json.loads(next((tmp_path / "cache").glob("*.json")).read_text())
        assert data["patterns"] == ["a", "b"]
        assert data["root"] == str(tmp_path.resolve())
