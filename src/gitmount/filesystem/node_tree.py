"""
The in-memory node hierarchy and its inode table.
"""
import asyncio
import logging
import posixpath
from typing import Dict, List

from gitmount.errors import IOFailure, NotADirectory, NotFound
from gitmount.filesystem.backing_store import BackingStore, NodeKind
from gitmount.filesystem.nodes import DirectoryNode, FileNode, Node, SymlinkNode
from gitmount.gitsync.changes import ChangeChannel

logger = logging.getLogger(__name__)

ROOT_INODE = 1


class NodeTree:
    """
    Owns every live node, keyed by inode number.
    The tree-wide lock serializes structural operations; per-file content is
    guarded by each file's own lock.
    """
    store: BackingStore
    changes: ChangeChannel
    lock: asyncio.Lock
    nodes: Dict[int, Node]
    root: DirectoryNode

    def __init__(self, store: BackingStore, changes: ChangeChannel):
        self.store = store
        self.changes = changes
        self.lock = asyncio.Lock()
        self.nodes = {}
        self.next_inode = ROOT_INODE
        self.root = DirectoryNode(self, "")
        self.register(self.root)

    @classmethod
    def build(cls, store: BackingStore, changes: ChangeChannel) -> "NodeTree":
        """Walk the working tree and mirror it, loading file contents into buffers."""
        tree = cls(store, changes)
        tree._populate(tree.root)
        logger.info("Loaded %d nodes from %s", len(tree.nodes), store.root)
        return tree

    def _populate(self, directory: DirectoryNode) -> None:
        for name in self.store.listdir(directory.path):
            path = posixpath.join(directory.path, name)
            kind = self.store.kind(path)
            if kind is NodeKind.DIRECTORY:
                child = DirectoryNode(self, path)
            elif kind is NodeKind.FILE:
                child = FileNode(self, path, self.store.read_file(path))
            elif kind is NodeKind.SYMLINK:
                child = SymlinkNode(self, path, self.store.readlink(path))
            else:
                logger.warning("Skipping unsupported entry %s", path)
                continue
            directory.attach(name, child)
            self.register(child)
            if isinstance(child, DirectoryNode):
                self._populate(child)

    def register(self, node: Node) -> int:
        node.inode = self.next_inode
        self.nodes[node.inode] = node
        self.next_inode += 1
        return node.inode

    def get(self, inode: int) -> Node:
        node = self.nodes.get(inode)
        if node is None:
            raise NotFound(message=f"inode {inode} not found")
        return node

    def forget(self, inode: int) -> bool:
        """Drop a detached node from the table once the kernel no longer references it."""
        node = self.nodes.get(inode)
        if node is None or node.attached:
            return False
        del self.nodes[inode]
        return True

    def resolve(self, path: str) -> Node:
        node: Node = self.root
        for part in path.split("/"):
            if not part:
                continue
            if not isinstance(node, DirectoryNode):
                raise NotADirectory(node.path)
            node = node.lookup(part)
        return node

    def dirty_files(self) -> List[FileNode]:
        return [node for node in self.nodes.values()
                if isinstance(node, FileNode) and node.dirty and node.attached]

    async def flush_all(self) -> int:
        """Flush every dirty file. Returns how many were written."""
        flushed = 0
        for node in self.dirty_files():
            try:
                await node.flush()
            except IOFailure as err:
                logger.error("Failed to flush %s: %s", node.path, err)
                continue
            flushed += 1
        if flushed:
            logger.info("Flushed %d dirty files", flushed)
        return flushed
