"""
Filesystem implementation over a git working tree.
This module provides the node hierarchy, its backing store and the FUSE binding
(imported separately from gitmount.filesystem.fuse_binding, it needs pyfuse3).
"""

from .backing_store import AttributeDefaults, Attributes, BackingStore, NodeKind
from .nodes import DirectoryNode, FileNode, Node, SymlinkNode
from .node_tree import NodeTree

__all__ = ['AttributeDefaults', 'Attributes', 'BackingStore', 'NodeKind',
           'DirectoryNode', 'FileNode', 'Node', 'SymlinkNode', 'NodeTree']
