"""
Tests for FileNode: buffered reads and writes, truncation and flushing.
"""
import stat

import pytest

from gitmount.errors import IOFailure


@pytest.mark.asyncio
async def test_write_read_round_trip(tree):
    node = await tree.root.create("x.txt")
    assert await node.write(0, b"hello world") == 11
    assert await node.read(0, 5) == b"hello"
    assert await node.read(6, 100) == b"world"


@pytest.mark.asyncio
async def test_sequential_writes_concatenate(tree):
    node = await tree.root.create("x.txt")
    await node.write(0, b"AB")
    await node.write(2, b"CD")
    assert await node.read(0, 4) == b"ABCD"


@pytest.mark.asyncio
async def test_read_past_end_is_empty(tree):
    node = await tree.root.create("x.txt")
    await node.write(0, b"abc")
    assert await node.read(3, 10) == b""
    assert await node.read(100, 1) == b""


@pytest.mark.asyncio
async def test_write_beyond_end_zero_fills(tree):
    node = await tree.root.create("x.txt")
    await node.write(4, b"z")
    assert await node.read(0, 10) == b"\0\0\0\0z"


@pytest.mark.asyncio
async def test_overwrite_in_place(tree):
    node = await tree.root.create("x.txt")
    await node.write(0, b"abcdef")
    await node.write(1, b"XY")
    assert await node.read(0, 6) == b"aXYdef"


@pytest.mark.asyncio
async def test_truncate_shrinks_and_grows(tree):
    node = await tree.root.create("x.txt")
    await node.write(0, b"abcdef")
    await node.flush()

    attrs = await node.setattr(size=3)
    assert attrs.size == 3
    assert node.dirty
    assert await node.read(0, 10) == b"abc"

    await node.setattr(size=5)
    assert await node.read(0, 10) == b"abc\0\0"


@pytest.mark.asyncio
async def test_flush_writes_backing_and_emits(tree, workdir, drain):
    node = await tree.root.create("x.txt")
    drain()
    await node.write(0, b"data")
    assert (workdir / "x.txt").read_bytes() == b""

    await node.flush()
    assert (workdir / "x.txt").read_bytes() == b"data"
    assert not node.dirty
    assert drain() == [("x.txt", "write")]

    # clean flush is a no-op
    await node.fsync()
    assert drain() == []


@pytest.mark.asyncio
async def test_flush_failure_keeps_dirty(tree, workdir):
    node = await tree.root.create("x.txt")
    await node.write(0, b"data")
    (workdir / "x.txt").unlink()
    (workdir / "x.txt").mkdir()
    with pytest.raises(IOFailure):
        await node.flush()
    assert node.dirty


@pytest.mark.asyncio
async def test_getattr_reports_buffer_size(tree):
    node = await tree.root.create("x.txt")
    await node.write(0, b"12345")
    attrs = await node.getattr()
    assert attrs.size == 5
    assert attrs.mode == stat.S_IFREG | 0o644
    assert attrs.uid == 1000
    assert attrs.mtime_ns == node.mtime_ns


@pytest.mark.asyncio
async def test_mode_and_owner_changes_are_ignored(tree):
    node = await tree.root.create("x.txt")
    attrs = await node.setattr(mode=0o600, uid=0, gid=0, mtime_ns=42)
    assert attrs.mode == stat.S_IFREG | 0o644
    assert (attrs.uid, attrs.gid) == (1000, 1000)
    assert attrs.mtime_ns == 42


@pytest.mark.asyncio
async def test_open_shares_buffer(tree):
    node = await tree.root.create("x.txt")
    first, second = node.open(), node.open()
    await first.write(0, b"shared")
    assert await second.read(0, 6) == b"shared"


@pytest.mark.asyncio
async def test_writes_after_unlink_are_not_persisted(tree, workdir):
    node = await tree.root.create("x.txt")
    await tree.root.remove("x.txt")
    await node.write(0, b"late")
    await node.flush()
    assert not (workdir / "x.txt").exists()
    assert not node.dirty
