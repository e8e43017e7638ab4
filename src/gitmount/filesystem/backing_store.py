"""
Backing store adapter over the local checkout of the repository.
Translates path operations into calls on the working tree and converts its
metadata into filesystem attribute records.
"""
import contextlib
import logging
import os
import stat
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional

from gitmount.errors import IOFailure, NotFound

logger = logging.getLogger(__name__)

DIRECTORY_SIZE = 4096
DIRECTORY_NLINK = 2
SYMLINK_PERMISSION = 0o777
# Repository metadata lives next to the checked out files and is never exposed
RESERVED_NAMES = frozenset({".git"})


class NodeKind(Enum):
    DIRECTORY = "directory"
    FILE = "file"
    SYMLINK = "symlink"


@dataclass
class AttributeDefaults:
    """Ownership and permission bits applied uniformly to every entry."""
    uid: int
    gid: int
    file_permission: int = 0o644
    dir_permission: int = 0o755


@dataclass
class Attributes:
    mode: int
    size: int
    uid: int
    gid: int
    nlink: int
    atime_ns: int
    mtime_ns: int
    ctime_ns: int


@contextlib.contextmanager
def _translate(operation: str, path: str) -> Iterator[None]:
    try:
        yield
    except FileNotFoundError as err:
        raise NotFound(path, f"{operation} {path}: {err.strerror}") from err
    except OSError as err:
        logger.warning("Error during %s of %s: %s", operation, path or "/", err)
        raise IOFailure(path, f"{operation} {path}: {err.strerror or err}") from err


class BackingStore:
    """
    Path-addressed store rooted at the working tree directory.
    Paths are relative POSIX paths; the empty string is the root.
    """
    root: str
    defaults: AttributeDefaults

    def __init__(self, root: str, defaults: AttributeDefaults):
        self.root = os.path.abspath(root)
        self.defaults = defaults

    def full_path(self, path: str) -> str:
        return os.path.join(self.root, path) if path else self.root

    def _check_reserved(self, path: str) -> None:
        if path.split("/", 1)[0] in RESERVED_NAMES:
            raise IOFailure(path, f"{path} is reserved for repository metadata")

    def stat(self, path: str) -> os.stat_result:
        with _translate("stat", path):
            return os.lstat(self.full_path(path))

    def kind(self, path: str) -> Optional[NodeKind]:
        mode = self.stat(path).st_mode
        if stat.S_ISDIR(mode):
            return NodeKind.DIRECTORY
        if stat.S_ISREG(mode):
            return NodeKind.FILE
        if stat.S_ISLNK(mode):
            return NodeKind.SYMLINK
        return None

    def listdir(self, path: str) -> List[str]:
        with _translate("listdir", path):
            names = os.listdir(self.full_path(path))
        if not path:
            names = [name for name in names if name not in RESERVED_NAMES]
        return sorted(names)

    def read_file(self, path: str) -> bytes:
        with _translate("read", path):
            with open(self.full_path(path), "rb") as f:
                return f.read()

    def create_file(self, path: str) -> None:
        self._check_reserved(path)
        # O_NONBLOCK keeps a stray FIFO from stalling the event loop
        flags = os.O_CREAT | os.O_WRONLY | os.O_TRUNC | os.O_NONBLOCK
        with _translate("create", path):
            fd = os.open(self.full_path(path), flags, 0o666)
            try:
                mode = os.fstat(fd).st_mode
            finally:
                os.close(fd)
        if not stat.S_ISREG(mode):
            raise IOFailure(path, f"create {path}: existing entry is not a regular file")

    def write_file(self, path: str, data: bytes) -> None:
        """Rewrite the whole entry with data."""
        with _translate("write", path):
            with open(self.full_path(path), "wb") as f:
                f.write(data)
                f.flush()

    def make_directory(self, path: str, mode: int) -> None:
        self._check_reserved(path)
        with _translate("mkdir", path):
            os.makedirs(self.full_path(path), mode=mode & 0o7777, exist_ok=True)

    def remove(self, path: str) -> None:
        """Remove a file, a symlink or an empty directory."""
        self._check_reserved(path)
        full = self.full_path(path)
        with _translate("remove", path):
            if os.path.isdir(full) and not os.path.islink(full):
                os.rmdir(full)
            else:
                os.unlink(full)

    def rename(self, old: str, new: str) -> None:
        self._check_reserved(old)
        self._check_reserved(new)
        with _translate("rename", old):
            os.rename(self.full_path(old), self.full_path(new))

    def symlink(self, target: str, path: str) -> None:
        self._check_reserved(path)
        with _translate("symlink", path):
            os.symlink(target, self.full_path(path))

    def readlink(self, path: str) -> str:
        with _translate("readlink", path):
            return os.readlink(self.full_path(path))

    def attributes(self, path: str, kind: NodeKind, size: Optional[int] = None) -> Attributes:
        """
        Build the attribute record for an entry.

        Args:
            path: Entry path
            kind: Node variant, decides the type bits, size and link count
            size: Size to report instead of the backing size

        Returns:
            Attributes carrying the configured ownership and permissions
        """
        try:
            info = self.stat(path)
            mtime_ns = info.st_mtime_ns
            backing_size = info.st_size
        except NotFound:
            # Entry not in the working tree (removed underneath us)
            mtime_ns = time.time_ns()
            backing_size = 0

        if kind is NodeKind.DIRECTORY:
            mode = stat.S_IFDIR | self.defaults.dir_permission
            size = DIRECTORY_SIZE
            nlink = DIRECTORY_NLINK
        elif kind is NodeKind.FILE:
            mode = stat.S_IFREG | self.defaults.file_permission
            nlink = 1
        elif kind is NodeKind.SYMLINK:
            mode = stat.S_IFLNK | SYMLINK_PERMISSION
            nlink = 1
        else:
            raise ValueError(f"Unknown node kind {kind!r}")

        return Attributes(
            mode=mode,
            size=backing_size if size is None else size,
            uid=self.defaults.uid,
            gid=self.defaults.gid,
            nlink=nlink,
            atime_ns=mtime_ns,
            mtime_ns=mtime_ns,
            ctime_ns=mtime_ns,
        )
