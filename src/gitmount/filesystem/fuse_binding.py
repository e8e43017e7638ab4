import errno
import functools
import logging
import os
from collections import Counter
from typing import Dict, List, Sequence, Tuple

import pyfuse3

from gitmount.errors import FSError, InvalidOperation, IsADirectory, NotADirectory
from gitmount.filesystem.backing_store import Attributes
from gitmount.filesystem.node_tree import ROOT_INODE, NodeTree
from gitmount.filesystem.nodes import DirectoryNode, FileNode, Node, SymlinkNode

logger = logging.getLogger(__name__)

BLOCK_SIZE = 512
ATTR_TIMEOUT = 1.0


def fuse_errors(func):
    """Translate filesystem errors into the errno reply the kernel expects."""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except FSError as err:
            logger.debug("%s failed: %s", func.__name__, err)
            raise pyfuse3.FUSEError(err.code) from err
    return wrapper


class FuseOps(pyfuse3.Operations):
    tree: NodeTree
    fhtable: Dict[int, Node]
    listings: Dict[int, List[str]]
    lookups: Counter
    fhind: int

    def __init__(self, tree: NodeTree, *args):
        super().__init__(*args)
        self.tree = tree
        self.fhind = 1
        self.fhtable = {}
        self.listings = {}
        self.lookups = Counter()

    def fh(self, node: Node) -> int:
        handle = self.fhind
        self.fhtable[handle] = node
        self.fhind += 1
        return handle

    def hf(self, handle: int) -> Node:
        node = self.fhtable.get(handle)
        if node is None:
            raise pyfuse3.FUSEError(errno.EBADF)
        return node

    def _directory(self, inode: int) -> DirectoryNode:
        node = self.tree.get(inode)
        if not isinstance(node, DirectoryNode):
            raise NotADirectory(node.path)
        return node

    def _entry(self, node: Node, attrs: Attributes) -> pyfuse3.EntryAttributes:
        entry = pyfuse3.EntryAttributes()
        entry.st_ino = node.inode
        entry.st_mode = attrs.mode
        entry.st_nlink = attrs.nlink
        entry.st_uid = attrs.uid
        entry.st_gid = attrs.gid
        entry.st_size = attrs.size
        entry.st_blksize = BLOCK_SIZE
        entry.st_blocks = (attrs.size + BLOCK_SIZE - 1) // BLOCK_SIZE
        entry.st_atime_ns = attrs.atime_ns
        entry.st_mtime_ns = attrs.mtime_ns
        entry.st_ctime_ns = attrs.ctime_ns
        entry.attr_timeout = ATTR_TIMEOUT
        entry.entry_timeout = ATTR_TIMEOUT
        return entry

    async def _lookup_entry(self, node: Node) -> pyfuse3.EntryAttributes:
        entry = self._entry(node, await node.getattr())
        self.lookups[node.inode] += 1
        return entry

    @fuse_errors
    async def lookup(self, parent_inode: int, name: bytes, ctx: pyfuse3.RequestContext = None) -> pyfuse3.EntryAttributes:
        node = self._directory(parent_inode).lookup(os.fsdecode(name))
        return await self._lookup_entry(node)

    @fuse_errors
    async def getattr(self, inode: int, ctx: pyfuse3.RequestContext = None) -> pyfuse3.EntryAttributes:
        node = self.tree.get(inode)
        return self._entry(node, await node.getattr())

    @fuse_errors
    async def setattr(self, inode: int, attr: pyfuse3.EntryAttributes, fields: pyfuse3.SetattrFields,
                      fh: int, ctx: pyfuse3.RequestContext) -> pyfuse3.EntryAttributes:
        node = self.tree.get(inode)
        attrs = await node.setattr(
            size=attr.st_size if fields.update_size else None,
            mode=attr.st_mode if fields.update_mode else None,
            uid=attr.st_uid if fields.update_uid else None,
            gid=attr.st_gid if fields.update_gid else None,
            atime_ns=attr.st_atime_ns if fields.update_atime else None,
            mtime_ns=attr.st_mtime_ns if fields.update_mtime else None,
        )
        return self._entry(node, attrs)

    @fuse_errors
    async def readlink(self, inode: int, ctx: pyfuse3.RequestContext) -> bytes:
        node = self.tree.get(inode)
        if not isinstance(node, SymlinkNode):
            raise InvalidOperation(node.path, f"{node.path} is not a symlink")
        return os.fsencode(node.readlink())

    @fuse_errors
    async def opendir(self, inode: int, ctx: pyfuse3.RequestContext) -> int:
        """Open the directory with inode, snapshotting its listing."""
        directory = self._directory(inode)
        handle = self.fh(directory)
        self.listings[handle] = directory.list()
        return handle

    @fuse_errors
    async def readdir(self, fh: int, start_id: int, token: pyfuse3.ReaddirToken) -> None:
        """Read entries in open directory fh, resuming at offset start_id."""
        directory = self.hf(fh)
        listing = self.listings[fh]
        for i in range(start_id, len(listing)):
            node = directory.children.get(listing[i])
            if node is None:
                # removed since opendir
                continue
            entry = self._entry(node, await node.getattr())
            if not pyfuse3.readdir_reply(token, os.fsencode(listing[i]), entry, i + 1):
                return
            self.lookups[node.inode] += 1

    async def releasedir(self, fh: int) -> None:
        self.listings.pop(fh, None)
        self.fhtable.pop(fh, None)

    @fuse_errors
    async def mkdir(self, parent_inode: int, name: bytes, mode: int,
                    ctx: pyfuse3.RequestContext) -> pyfuse3.EntryAttributes:
        """Create a directory."""
        node = await self._directory(parent_inode).mkdir(os.fsdecode(name), mode)
        return await self._lookup_entry(node)

    @fuse_errors
    async def rmdir(self, parent_inode: int, name: bytes, ctx: pyfuse3.RequestContext) -> None:
        """Remove directory name."""
        await self._directory(parent_inode).rmdir(os.fsdecode(name))

    @fuse_errors
    async def unlink(self, parent_inode: int, name: bytes, ctx: pyfuse3.RequestContext) -> None:
        """Remove a file or symlink."""
        await self._directory(parent_inode).remove(os.fsdecode(name))

    @fuse_errors
    async def rename(self, parent_inode_old: int, name_old: bytes, parent_inode_new: int,
                     name_new: bytes, flags: int, ctx: pyfuse3.RequestContext) -> None:
        """Rename a directory entry."""
        if flags & pyfuse3.RENAME_EXCHANGE:
            raise InvalidOperation(os.fsdecode(name_old), "RENAME_EXCHANGE is not supported")
        source = self._directory(parent_inode_old)
        target = self.tree.get(parent_inode_new)
        await source.rename(os.fsdecode(name_old), target, os.fsdecode(name_new),
                            replace=not flags & pyfuse3.RENAME_NOREPLACE)

    @fuse_errors
    async def symlink(self, parent_inode: int, name: bytes, target: bytes,
                      ctx: pyfuse3.RequestContext) -> pyfuse3.EntryAttributes:
        node = await self._directory(parent_inode).symlink(os.fsdecode(name), os.fsdecode(target))
        return await self._lookup_entry(node)

    @fuse_errors
    async def open(self, inode: int, flags: int, ctx: pyfuse3.RequestContext) -> pyfuse3.FileInfo:
        node = self.tree.get(inode)
        if isinstance(node, DirectoryNode):
            raise IsADirectory(node.path)
        if not isinstance(node, FileNode):
            raise InvalidOperation(node.path, f"cannot open {node.path}")
        return pyfuse3.FileInfo(fh=self.fh(node.open()))

    @fuse_errors
    async def create(self, parent_inode: int, name: bytes, mode: int, flags: int,
                     ctx: pyfuse3.RequestContext) -> Tuple[pyfuse3.FileInfo, pyfuse3.EntryAttributes]:
        """Create a file and open it with flags. Permissions come from the mount configuration."""
        node = await self._directory(parent_inode).create(os.fsdecode(name))
        return pyfuse3.FileInfo(fh=self.fh(node.open())), await self._lookup_entry(node)

    @fuse_errors
    async def read(self, fh: int, off: int, size: int) -> bytes:
        """Read size bytes from fh at position off."""
        return await self.hf(fh).read(off, size)

    @fuse_errors
    async def write(self, fh: int, off: int, buf: bytes) -> int:
        """Write buf into fh at off."""
        return await self.hf(fh).write(off, buf)

    @fuse_errors
    async def flush(self, fh: int) -> None:
        await self.hf(fh).flush()

    @fuse_errors
    async def fsync(self, fh: int, datasync: bool) -> None:
        """Flush buffers for open file fh."""
        await self.hf(fh).fsync()

    @fuse_errors
    async def release(self, fh: int) -> None:
        node = self.fhtable.pop(fh, None)
        if node is not None:
            await node.flush()

    async def forget(self, inode_list: Sequence[Tuple[int, int]]) -> None:
        for inode, nlookup in inode_list:
            if inode == ROOT_INODE:
                continue
            remaining = self.lookups[inode] - nlookup
            if remaining > 0:
                self.lookups[inode] = remaining
                continue
            self.lookups.pop(inode, None)
            if self.tree.forget(inode):
                logger.debug("Forgot inode %d", inode)

    @fuse_errors
    async def getxattr(self, inode: int, name: bytes, ctx: pyfuse3.RequestContext) -> bytes:
        return self.tree.get(inode).getxattr(os.fsdecode(name))

    @fuse_errors
    async def listxattr(self, inode: int, ctx: pyfuse3.RequestContext) -> List[bytes]:
        return [os.fsencode(name) for name in self.tree.get(inode).listxattr()]

    async def statfs(self, ctx: pyfuse3.RequestContext) -> pyfuse3.StatvfsData:
        stats = pyfuse3.StatvfsData()
        info = os.statvfs(self.tree.store.root)
        for attr in ("f_bsize", "f_frsize", "f_blocks", "f_bfree", "f_bavail",
                     "f_files", "f_ffree", "f_favail", "f_namemax"):
            setattr(stats, attr, getattr(info, attr))
        return stats
