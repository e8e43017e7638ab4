"""
Mount lifecycle: wire the repository, node tree and sync manager into a FUSE session.
"""
import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass

import pyfuse3

from gitmount.config import Config
from gitmount.filesystem.backing_store import AttributeDefaults, BackingStore
from gitmount.filesystem.fuse_binding import FuseOps
from gitmount.filesystem.node_tree import NodeTree
from gitmount.gitsync.changes import ChangeChannel
from gitmount.gitsync.manager import SyncManager
from gitmount.gitsync.repository import GitRepository

logger = logging.getLogger(__name__)

FSNAME = "gitmount"


@dataclass
class MountHandle:
    config: Config
    repository: GitRepository
    tree: NodeTree
    sync_manager: SyncManager
    operations: FuseOps


def mount_options(config: Config) -> set:
    options = set(pyfuse3.default_options)
    options.add(f"fsname={FSNAME}")
    if config.allow_other:
        options.add("allow_other")
    if config.debug:
        options.add("debug")
    return options


async def mount(config: Config) -> MountHandle:
    """
    Clone or reopen the repository, build the tree and start the FUSE session.
    The caller still has to run pyfuse3.main().
    """
    workdir = config.workdir or tempfile.mkdtemp(prefix="gitmount-")
    os.makedirs(workdir, exist_ok=True)
    repository = await asyncio.to_thread(
        GitRepository.open_or_clone,
        config.remote, workdir,
        key_file=config.auth_file,
        depth=config.depth,
        branch=config.branch or None,
        force_push=config.force_push,
    )

    defaults = AttributeDefaults(
        uid=os.getuid() if config.uid < 0 else config.uid,
        gid=os.getgid() if config.gid < 0 else config.gid,
        file_permission=config.file_permission,
        dir_permission=config.dir_permission,
    )
    changes = ChangeChannel(capacity=config.queue_size)
    store = BackingStore(workdir, defaults)
    tree = NodeTree.build(store, changes)
    sync_manager = SyncManager(
        repository, changes,
        period=config.sync_period,
        quiescence=config.quiescence,
        max_retries=config.max_retries,
    )
    operations = FuseOps(tree)

    pyfuse3.init(operations, config.mountpoint, mount_options(config))
    await sync_manager.start()
    logger.info("Mounted %s on %s (working tree %s)", config.remote, config.mountpoint, workdir)
    logger.info("Unmount with: fusermount -u %s", config.mountpoint)
    return MountHandle(config, repository, tree, sync_manager, operations)


async def unmount(handle: MountHandle) -> None:
    """Close the session, persist dirty buffers and make a final sync."""
    pyfuse3.close(unmount=True)
    await handle.tree.flush_all()
    await handle.sync_manager.stop(final_flush=True)
    logger.info("Unmounted %s", handle.config.mountpoint)
