"""
Nodes of the mounted tree.
Directory nodes mutate both the backing store and the in-memory hierarchy;
file nodes own a byte buffer mirroring pending content with dirty tracking.
Backing-store mutation always precedes in-memory linkage changes, so a
backing failure leaves the tree untouched.
"""
import asyncio
import logging
import os
import posixpath
import time
from typing import TYPE_CHECKING, List, Optional

from sortedcontainers import SortedDict

from gitmount.errors import (
    AlreadyExists,
    CrossDeviceNotSupported,
    InvalidOperation,
    IsADirectory,
    NotADirectory,
    NotEmpty,
    NotFound,
    Unsupported,
)
from gitmount.filesystem.backing_store import Attributes, BackingStore, NodeKind
from gitmount.gitsync.changes import ChangeChannel, ChangeKind

if TYPE_CHECKING:
    from gitmount.filesystem.node_tree import NodeTree

logger = logging.getLogger(__name__)


class Node:
    """Common state of every node: tree membership, position and time overrides."""
    kind: NodeKind
    tree: "NodeTree"
    path: str
    parent: Optional["DirectoryNode"]
    inode: int

    def __init__(self, tree: "NodeTree", path: str):
        self.tree = tree
        self.path = path
        self.parent = None
        self.inode = 0
        self.atime_ns: Optional[int] = None
        self.mtime_ns: Optional[int] = None

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def store(self) -> BackingStore:
        return self.tree.store

    @property
    def changes(self) -> ChangeChannel:
        return self.tree.changes

    @property
    def attached(self) -> bool:
        return self.parent is not None or self is self.tree.root

    def is_descendant_of(self, other: "Node") -> bool:
        node: Optional[Node] = self
        while node is not None:
            if node is other:
                return True
            node = node.parent
        return False

    def rehome(self, path: str) -> None:
        self.path = path

    def _attributes(self, size: Optional[int] = None) -> Attributes:
        attrs = self.store.attributes(self.path, self.kind, size)
        if self.atime_ns is not None:
            attrs.atime_ns = self.atime_ns
        if self.mtime_ns is not None:
            attrs.mtime_ns = self.mtime_ns
            attrs.ctime_ns = self.mtime_ns
        return attrs

    async def getattr(self) -> Attributes:
        return self._attributes()

    async def setattr(self, size: Optional[int] = None, mode: Optional[int] = None,
                      uid: Optional[int] = None, gid: Optional[int] = None,
                      atime_ns: Optional[int] = None, mtime_ns: Optional[int] = None) -> Attributes:
        if size is not None:
            logger.info("Size change requested for %s %s (ignored)", self.kind.value, self.path or "/")
        self._apply_metadata(mode, uid, gid, atime_ns, mtime_ns)
        return await self.getattr()

    def _apply_metadata(self, mode, uid, gid, atime_ns, mtime_ns) -> None:
        # Permissions and ownership are fixed by the mount configuration
        if mode is not None:
            logger.info("Mode change requested to %o for %s (ignored)", mode, self.path or "/")
        if uid is not None or gid is not None:
            logger.info("Ownership change requested for %s (ignored)", self.path or "/")
        if atime_ns is not None:
            self.atime_ns = atime_ns
        if mtime_ns is not None:
            self.mtime_ns = mtime_ns

    def getxattr(self, name: str) -> bytes:
        raise Unsupported(self.path, f"extended attribute {name} is not supported")

    def listxattr(self) -> List[str]:
        return []

    async def unlink(self) -> None:
        self.changes.emit(self.path, ChangeKind.DELETE)

    async def discard(self) -> None:
        """Drop state of a node replaced by a rename; no event is emitted."""
        pass


class FileNode(Node):
    """
    A regular file. The node itself is the open handle: concurrent opens share
    one buffer and one lock.
    """
    kind = NodeKind.FILE
    buffer: bytearray
    dirty: bool
    lock: asyncio.Lock

    def __init__(self, tree: "NodeTree", path: str, content: bytes = b""):
        super().__init__(tree, path)
        self.buffer = bytearray(content)
        self.dirty = False
        self.lock = asyncio.Lock()

    def open(self) -> "FileNode":
        return self

    async def read(self, offset: int, length: int) -> bytes:
        async with self.lock:
            if offset >= len(self.buffer):
                return b""
            return bytes(self.buffer[offset:offset + length])

    async def write(self, offset: int, data: bytes) -> int:
        async with self.lock:
            end = offset + len(data)
            if end > len(self.buffer):
                # Build the grown buffer completely before swapping it in
                grown = bytearray(end)
                grown[:len(self.buffer)] = self.buffer
                grown[offset:end] = data
                self.buffer = grown
            else:
                self.buffer[offset:end] = data
            self.dirty = True
            self.mtime_ns = time.time_ns()
            return len(data)

    async def flush(self) -> None:
        """Rewrite the backing entry from the buffer if it is dirty."""
        async with self.lock:
            if not self.dirty:
                return
            if self.parent is None:
                # Unlinked or replaced while open: nothing left to persist to
                self.dirty = False
                return
            self.store.write_file(self.path, bytes(self.buffer))
            self.dirty = False
            logger.debug("Flushed %s (%d bytes)", self.path, len(self.buffer))
            self.changes.emit(self.path, ChangeKind.WRITE)

    async def fsync(self) -> None:
        await self.flush()

    async def getattr(self) -> Attributes:
        async with self.lock:
            return self._attributes(size=len(self.buffer))

    async def setattr(self, size: Optional[int] = None, mode: Optional[int] = None,
                      uid: Optional[int] = None, gid: Optional[int] = None,
                      atime_ns: Optional[int] = None, mtime_ns: Optional[int] = None) -> Attributes:
        if size is not None:
            async with self.lock:
                self._truncate(size)
        self._apply_metadata(mode, uid, gid, atime_ns, mtime_ns)
        return await self.getattr()

    def _truncate(self, size: int) -> None:
        if size < len(self.buffer):
            del self.buffer[size:]
        elif size > len(self.buffer):
            self.buffer.extend(bytes(size - len(self.buffer)))
        self.dirty = True
        self.mtime_ns = time.time_ns()
        logger.info("File %s size changed to %d", self.path, size)

    async def unlink(self) -> None:
        async with self.lock:
            self.buffer = bytearray()
            self.dirty = False
        await super().unlink()

    async def discard(self) -> None:
        async with self.lock:
            self.buffer = bytearray()
            self.dirty = False


class SymlinkNode(Node):
    kind = NodeKind.SYMLINK
    target: str

    def __init__(self, tree: "NodeTree", path: str, target: str):
        super().__init__(tree, path)
        self.target = target

    def readlink(self) -> str:
        return self.target

    async def getattr(self) -> Attributes:
        return self._attributes(size=len(os.fsencode(self.target)))


class DirectoryNode(Node):
    """
    A directory. Children live in a sorted map so listings are stable and
    restartable between structural operations.
    """
    kind = NodeKind.DIRECTORY
    children: SortedDict

    def __init__(self, tree: "NodeTree", path: str):
        super().__init__(tree, path)
        self.children = SortedDict()

    @property
    def is_root(self) -> bool:
        return self is self.tree.root

    def child_path(self, name: str) -> str:
        return posixpath.join(self.path, name)

    def list(self) -> List[str]:
        return list(self.children.keys())

    def child(self, name: str) -> Node:
        node = self.children.get(name)
        if node is None:
            raise NotFound(self.child_path(name))
        return node

    def lookup(self, name: str) -> Node:
        if name == ".":
            return self
        if name == "..":
            return self.parent if self.parent is not None else self
        return self.child(name)

    def attach(self, name: str, node: Node) -> None:
        self.children[name] = node
        node.parent = self
        node.rehome(self.child_path(name))

    def detach(self, name: str) -> Node:
        node = self.children.pop(name)
        node.parent = None
        return node

    def rehome(self, path: str) -> None:
        # Paths are absolute, so every descendant follows its ancestor
        self.path = path
        for name, child in self.children.items():
            child.rehome(posixpath.join(path, name))

    async def create(self, name: str) -> FileNode:
        """
        Create an empty file in this directory.

        Args:
            name: Name of the new file

        Returns:
            The linked file node
        """
        path = self.child_path(name)
        async with self.tree.lock:
            if name in self.children:
                raise AlreadyExists(path)
            self.store.create_file(path)
            node = FileNode(self.tree, path)
            self.attach(name, node)
            self.tree.register(node)
            logger.info("Created file: %s", path)
            self.changes.emit(path, ChangeKind.CREATE)
        return node

    async def mkdir(self, name: str, mode: int) -> "DirectoryNode":
        """
        Create a subdirectory.

        Args:
            name: Name of the new directory
            mode: Requested permissions, applied to the backing directory

        Returns:
            The linked directory node
        """
        path = self.child_path(name)
        async with self.tree.lock:
            if name in self.children:
                raise AlreadyExists(path)
            self.store.make_directory(path, mode)
            node = DirectoryNode(self.tree, path)
            self.attach(name, node)
            self.tree.register(node)
            logger.info("Created directory: %s with mode %o", path, mode)
            self.changes.emit(path, ChangeKind.MKDIR)
        return node

    async def symlink(self, name: str, target: str) -> SymlinkNode:
        path = self.child_path(name)
        async with self.tree.lock:
            if name in self.children:
                raise AlreadyExists(path)
            self.store.symlink(target, path)
            node = SymlinkNode(self.tree, path, target)
            self.attach(name, node)
            self.tree.register(node)
            logger.info("Created symlink: %s -> %s", path, target)
            self.changes.emit(path, ChangeKind.CREATE)
        return node

    async def remove(self, name: str) -> None:
        """Remove a file or symlink; the removed node emits the delete event."""
        async with self.tree.lock:
            node = self.child(name)
            if isinstance(node, DirectoryNode):
                raise IsADirectory(node.path)
            self.store.remove(node.path)
            self.detach(name)
            logger.info("Unlink: %s", node.path)
            await node.unlink()

    async def rmdir(self, name: str) -> None:
        """Remove an empty subdirectory. Directories with any live child are refused."""
        async with self.tree.lock:
            node = self.child(name)
            if not isinstance(node, DirectoryNode):
                raise NotADirectory(node.path)
            if node.children:
                logger.info("Cannot remove non-empty directory: %s", node.path)
                raise NotEmpty(node.path)
            self.store.remove(node.path)
            self.detach(name)
            logger.info("Rmdir: %s", node.path)
            self.changes.emit(node.path, ChangeKind.RMDIR)

    async def rename(self, old_name: str, new_parent: Node, new_name: str, replace: bool = True) -> None:
        """
        Move a child of this directory under new_parent as new_name.

        The backing store is renamed first; only on success is the node
        detached, re-homed and any replaced target dropped. At the event
        layer a rename is a delete of the old path plus a create of the new.

        Args:
            old_name: Current name in this directory
            new_parent: Destination directory, must belong to the same tree
            new_name: Name in the destination directory
            replace: Whether an existing destination entry may be replaced
        """
        if not isinstance(new_parent, Node):
            raise TypeError(f"Unexpected rename target {new_parent!r}")
        if new_parent.tree is not self.tree:
            raise CrossDeviceNotSupported(self.child_path(old_name))
        if not isinstance(new_parent, DirectoryNode):
            if isinstance(new_parent, (FileNode, SymlinkNode)):
                raise NotADirectory(new_parent.path)
            raise TypeError(f"Unexpected rename target {new_parent!r}")

        async with self.tree.lock:
            node = self.child(old_name)
            if new_parent is self and old_name == new_name:
                return
            if isinstance(node, DirectoryNode) and new_parent.is_descendant_of(node):
                raise InvalidOperation(node.path, f"cannot move {node.path} into itself")

            old_path = node.path
            new_path = new_parent.child_path(new_name)
            replaced = new_parent.children.get(new_name)
            if replaced is not None:
                if not replace:
                    raise AlreadyExists(new_path)
                _check_replaceable(node, replaced)

            self.store.rename(old_path, new_path)

            self.detach(old_name)
            if replaced is not None:
                new_parent.detach(new_name)
                await replaced.discard()
            new_parent.attach(new_name, node)
            logger.info("Renamed %s -> %s", old_path, new_path)

            self.changes.emit(old_path, ChangeKind.DELETE)
            self.changes.emit(new_path, ChangeKind.CREATE)


def _check_replaceable(node: Node, replaced: Node) -> None:
    if isinstance(replaced, DirectoryNode):
        if not isinstance(node, DirectoryNode):
            raise IsADirectory(replaced.path)
        if replaced.children:
            raise NotEmpty(replaced.path)
    elif isinstance(node, DirectoryNode):
        raise NotADirectory(replaced.path)
