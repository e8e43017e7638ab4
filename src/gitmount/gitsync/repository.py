"""
Git repository operations for the sync manager, using pygit2.
All pygit2 failures leave this module as SyncError subclasses.
"""
import logging
import os
from typing import List, Optional

import pygit2
from pygit2.enums import CredentialType, FileStatus

logger = logging.getLogger(__name__)

AUTHOR_NAME = "gitmount"
AUTHOR_EMAIL = "gitmount@localhost"
COMMIT_MESSAGE = "Auto-commit from gitmount"
DEFAULT_REMOTE = "origin"
DEFAULT_SSH_USER = "git"
MAX_CREDENTIAL_ATTEMPTS = 3
PERMANENT_MARKERS = ("authentic", "credential", "permission denied", "publickey")


class SyncError(Exception):
    """A commit or push that did not complete."""


class TransientSyncError(SyncError):
    """Network failures, rejected references and anything unclassified. Worth retrying."""


class PermanentSyncError(SyncError):
    """Authentication failures and missing remotes. Retrying will not help."""


def _classify(err: Exception, action: str) -> SyncError:
    message = f"{action} failed: {err}"
    lowered = str(err).lower()
    if any(marker in lowered for marker in PERMANENT_MARKERS):
        return PermanentSyncError(message)
    return TransientSyncError(message)


def is_local_url(url: str) -> bool:
    """True for file:// URLs and plain paths, which the local transport serves."""
    return url.startswith("file://") or os.path.isdir(url)


class SSHCallbacks(pygit2.RemoteCallbacks):
    """Credential and push-status callbacks for one remote operation."""

    def __init__(self, key_file: Optional[str] = None):
        super().__init__()
        self.key_file = key_file
        self.attempts = 0
        self.rejected: List[str] = []

    def credentials(self, url, username_from_url, allowed_types):
        # libgit2 keeps asking while the server refuses the offered key
        self.attempts += 1
        if self.attempts > MAX_CREDENTIAL_ATTEMPTS:
            raise PermanentSyncError(f"authentication failed for {url}")

        user = username_from_url or DEFAULT_SSH_USER
        if allowed_types & CredentialType.USERNAME and not allowed_types & CredentialType.SSH_KEY:
            return pygit2.Username(user)
        if self.key_file:
            pubkey = self.key_file + ".pub"
            return pygit2.Keypair(user, pubkey if os.path.exists(pubkey) else None, self.key_file, "")
        return pygit2.KeypairFromAgent(user)

    def push_update_reference(self, refname, message):
        if message is not None:
            logger.warning("Remote rejected %s: %s", refname, message)
            self.rejected.append(f"{refname}: {message}")


class GitRepository:
    """A local checkout with an origin remote to push to."""
    repo: pygit2.Repository
    key_file: Optional[str]
    remote_name: str
    force_push: bool

    def __init__(self, repo: pygit2.Repository, key_file: Optional[str] = None,
                 remote_name: str = DEFAULT_REMOTE, force_push: bool = True):
        self.repo = repo
        self.key_file = key_file
        self.remote_name = remote_name
        self.force_push = force_push

    @classmethod
    def clone(cls, url: str, path: str, key_file: Optional[str] = None, depth: int = 1,
              branch: Optional[str] = None, force_push: bool = True) -> "GitRepository":
        """
        Clone url into path.

        Args:
            url: Remote location, any transport libgit2 understands
            path: Empty or missing directory to clone into
            key_file: Private SSH key; the agent is used when absent
            depth: History depth, 0 for a full clone
            branch: Branch to check out, the remote default when empty

        Returns:
            The opened repository
        """
        if depth and is_local_url(url):
            # The local transport has no shallow fetch
            logger.info("Local remote %s, cloning full history", url)
            depth = 0
        logger.info("Cloning repository %s into %s", url, path)
        try:
            repo = pygit2.clone_repository(
                url, path,
                checkout_branch=branch or None,
                callbacks=SSHCallbacks(key_file),
                depth=depth,
            )
        except (pygit2.GitError, OSError) as err:
            raise _classify(err, f"clone of {url}") from err
        return cls(repo, key_file=key_file, force_push=force_push)

    @classmethod
    def open(cls, path: str, key_file: Optional[str] = None, force_push: bool = True) -> "GitRepository":
        try:
            repo = pygit2.Repository(path)
        except pygit2.GitError as err:
            raise PermanentSyncError(f"cannot open repository at {path}: {err}") from err
        return cls(repo, key_file=key_file, force_push=force_push)

    @classmethod
    def open_or_clone(cls, url: str, path: str, key_file: Optional[str] = None, depth: int = 1,
                      branch: Optional[str] = None, force_push: bool = True) -> "GitRepository":
        if os.path.isdir(os.path.join(path, ".git")):
            logger.info("Reusing existing checkout in %s", path)
            return cls.open(path, key_file=key_file, force_push=force_push)
        return cls.clone(url, path, key_file=key_file, depth=depth, branch=branch, force_push=force_push)

    @property
    def workdir(self) -> str:
        return self.repo.workdir

    def commit_all(self, message: str = COMMIT_MESSAGE) -> Optional[pygit2.Oid]:
        """
        Stage every working tree change, deletions included, and commit it.

        Returns:
            The new commit id, or None when the working tree is clean
        """
        try:
            status = self.repo.status()
            if not status:
                logger.debug("No changes to commit")
                return None

            index = self.repo.index
            for path, flags in status.items():
                if flags & FileStatus.WT_DELETED:
                    index.remove(path)
            index.add_all()
            index.write()
            tree = index.write_tree()

            parents = [] if self.repo.head_is_unborn else [self.repo.head.target]
            signature = pygit2.Signature(AUTHOR_NAME, AUTHOR_EMAIL)
            oid = self.repo.create_commit("HEAD", signature, signature, message, tree, parents)
        except (pygit2.GitError, OSError) as err:
            raise _classify(err, "commit") from err

        logger.info("Committed %d changed paths as %s", len(status), oid)
        return oid

    def push(self) -> None:
        """Push the current branch to the remote. Blocking; run it off the event loop."""
        if self.repo.head_is_unborn:
            logger.debug("Nothing to push, HEAD is unborn")
            return

        ref = self.repo.head.name
        refspec = f"+{ref}:{ref}" if self.force_push else f"{ref}:{ref}"
        callbacks = SSHCallbacks(self.key_file)
        try:
            remote = self.repo.remotes[self.remote_name]
            remote.push([refspec], callbacks=callbacks)
        except KeyError as err:
            raise PermanentSyncError(f"remote {self.remote_name} is not configured") from err
        except (pygit2.GitError, OSError) as err:
            raise _classify(err, f"push to {self.remote_name}") from err

        if callbacks.rejected:
            raise TransientSyncError(f"push rejected: {'; '.join(callbacks.rejected)}")
        logger.info("Pushed %s to %s", ref, self.remote_name)
