"""
Error taxonomy for filesystem operations.
Every error carries the errno code the FUSE layer reports to the caller.
"""
import errno


class FSError(Exception):
    """Base class for errors surfaced to filesystem callers."""
    code: int = errno.EIO

    def __init__(self, path: str = "", message: str = ""):
        self.path = path
        super().__init__(message or f"{type(self).__name__}: {path or '/'}")


class NotFound(FSError):
    code = errno.ENOENT


class NotEmpty(FSError):
    code = errno.ENOTEMPTY


class CrossDeviceNotSupported(FSError):
    code = errno.EXDEV


class IOFailure(FSError):
    """Any backing-store failure; permission and storage errors collapse into this."""
    code = errno.EIO


class Unsupported(FSError):
    """Attribute classes the model cannot represent."""
    code = errno.ENODATA


class AlreadyExists(FSError):
    code = errno.EEXIST


class NotADirectory(FSError):
    code = errno.ENOTDIR


class IsADirectory(FSError):
    code = errno.EISDIR


class InvalidOperation(FSError):
    code = errno.EINVAL
