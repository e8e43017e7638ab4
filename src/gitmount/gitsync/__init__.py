"""
Synchronisation of working tree changes to the remote repository.
This module handles change notification, debouncing, commits and pushes.
"""

from .changes import ChangeChannel, ChangeEvent, ChangeKind
from .repository import GitRepository, PermanentSyncError, SyncError, TransientSyncError
from .manager import SyncManager, SyncStatus

__all__ = ['ChangeChannel', 'ChangeEvent', 'ChangeKind', 'GitRepository', 'PermanentSyncError',
           'SyncError', 'TransientSyncError', 'SyncManager', 'SyncStatus']
