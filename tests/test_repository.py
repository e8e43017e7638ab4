"""
Tests for GitRepository against local repositories created with pygit2.
"""
import os

import pygit2
import pytest
from pygit2.enums import CredentialType

from gitmount.config import Config
from gitmount.filesystem.backing_store import AttributeDefaults, BackingStore
from gitmount.filesystem.node_tree import NodeTree
from gitmount.gitsync.changes import ChangeChannel
from gitmount.gitsync.manager import SyncManager
from gitmount.gitsync.repository import (
    AUTHOR_EMAIL,
    AUTHOR_NAME,
    COMMIT_MESSAGE,
    GitRepository,
    PermanentSyncError,
    SSHCallbacks,
    SyncError,
    TransientSyncError,
    _classify,
    is_local_url,
)


@pytest.fixture
def remote(tmp_path):
    seed_path = tmp_path / "seed"
    seed = pygit2.init_repository(str(seed_path), initial_head="main")
    (seed_path / "README").write_text("hello\n")
    seed.index.add("README")
    seed.index.write()
    tree = seed.index.write_tree()
    signature = pygit2.Signature("seed", "seed@example.com")
    seed.create_commit("HEAD", signature, signature, "initial", tree, [])

    bare_path = tmp_path / "remote.git"
    pygit2.clone_repository(str(seed_path), str(bare_path), bare=True)
    return bare_path


@pytest.fixture
def checkout(remote, tmp_path):
    return GitRepository.clone(str(remote), str(tmp_path / "checkout"), depth=0)


def remote_head(remote) -> pygit2.Commit:
    return pygit2.Repository(str(remote)).head.peel(pygit2.Commit)


def blob_data(remote, path: str) -> bytes:
    repo = pygit2.Repository(str(remote))
    entry = repo.head.peel(pygit2.Commit).tree[path]
    return repo[entry.id].data


# =============================================================================
# Clone / open
# =============================================================================

class TestClone:

    def test_clone_checks_out_files(self, checkout):
        assert open(os.path.join(checkout.workdir, "README")).read() == "hello\n"

    def test_open_or_clone_reuses_checkout(self, checkout, tmp_path):
        reopened = GitRepository.open_or_clone("/does/not/exist", str(tmp_path / "checkout"))
        assert reopened.repo.head.target == checkout.repo.head.target

    def test_clone_failure_is_sync_error(self, tmp_path):
        with pytest.raises(SyncError):
            GitRepository.clone(str(tmp_path / "nowhere"), str(tmp_path / "target"), depth=0)

    def test_open_non_repository(self, tmp_path):
        with pytest.raises(PermanentSyncError):
            GitRepository.open(str(tmp_path))

    def test_default_depth_clones_local_path(self, remote, tmp_path):
        depth = Config(mountpoint="", remote=str(remote)).depth
        assert depth > 0
        repo = GitRepository.open_or_clone(str(remote), str(tmp_path / "co"), depth=depth)
        assert repo.repo.head.target == remote_head(remote).id

    def test_shallow_request_for_file_url(self, remote, tmp_path):
        repo = GitRepository.clone("file://" + str(remote), str(tmp_path / "co"), depth=1)
        assert os.path.exists(os.path.join(repo.workdir, "README"))

    @pytest.mark.parametrize("url,expected", [
        ("file:///srv/repo.git", True),
        ("git@example.com:team/repo.git", False),
        ("https://example.com/team/repo.git", False),
    ])
    def test_is_local_url(self, url, expected):
        assert is_local_url(url) is expected

    def test_existing_directory_is_local(self, remote):
        assert is_local_url(str(remote))


# =============================================================================
# Commit / push
# =============================================================================

class TestCommitAndPush:

    def test_clean_tree_commits_nothing(self, checkout):
        assert checkout.commit_all() is None

    def test_commit_and_push_all_changes(self, checkout, remote):
        workdir = checkout.workdir
        os.makedirs(os.path.join(workdir, "a"))
        with open(os.path.join(workdir, "a", "b.txt"), "w") as f:
            f.write("hello")
        os.unlink(os.path.join(workdir, "README"))

        oid = checkout.commit_all()
        assert oid is not None
        checkout.push()

        head = remote_head(remote)
        assert head.id == oid
        assert head.message == COMMIT_MESSAGE
        assert (head.author.name, head.author.email) == (AUTHOR_NAME, AUTHOR_EMAIL)
        assert blob_data(remote, "a/b.txt") == b"hello"
        with pytest.raises(KeyError):
            head.tree["README"]
        assert checkout.commit_all() is None

    def test_modified_file(self, checkout, remote):
        with open(os.path.join(checkout.workdir, "README"), "w") as f:
            f.write("changed\n")
        checkout.commit_all()
        checkout.push()
        assert blob_data(remote, "README") == b"changed\n"

    def test_missing_remote_is_permanent(self, remote, tmp_path):
        repo = GitRepository.clone(str(remote), str(tmp_path / "other"), depth=0)
        repo.remote_name = "upstream"
        with pytest.raises(PermanentSyncError):
            repo.push()

    def test_last_writer_wins(self, remote, tmp_path):
        first = GitRepository.clone(str(remote), str(tmp_path / "first"), depth=0)
        second = GitRepository.clone(str(remote), str(tmp_path / "second"), depth=0)

        with open(os.path.join(second.workdir, "README"), "w") as f:
            f.write("second\n")
        second.commit_all()
        second.push()

        with open(os.path.join(first.workdir, "README"), "w") as f:
            f.write("first\n")
        first.commit_all()
        first.push()

        assert blob_data(remote, "README") == b"first\n"

    def test_diverged_push_without_force_fails(self, remote, tmp_path):
        first = GitRepository.clone(str(remote), str(tmp_path / "first"), depth=0, force_push=False)
        second = GitRepository.clone(str(remote), str(tmp_path / "second"), depth=0)

        with open(os.path.join(second.workdir, "new"), "w") as f:
            f.write("x")
        second.commit_all()
        second.push()

        with open(os.path.join(first.workdir, "other"), "w") as f:
            f.write("y")
        first.commit_all()
        with pytest.raises(TransientSyncError):
            first.push()


# =============================================================================
# Credentials and classification
# =============================================================================

class TestCredentials:

    def test_key_file_preferred(self, tmp_path):
        key = tmp_path / "id_ed25519"
        key.write_text("private")
        (tmp_path / "id_ed25519.pub").write_text("public")
        callbacks = SSHCallbacks(str(key))
        credential = callbacks.credentials("ssh://host/repo.git", "deploy", CredentialType.SSH_KEY)
        assert isinstance(credential, pygit2.Keypair)
        assert credential.credential_tuple[:3] == ("deploy", str(key) + ".pub", str(key))

    def test_agent_with_default_user(self):
        callbacks = SSHCallbacks()
        credential = callbacks.credentials("ssh://host/repo.git", None, CredentialType.SSH_KEY)
        assert isinstance(credential, pygit2.KeypairFromAgent)
        assert credential.credential_tuple[0] == "git"

    def test_repeated_requests_give_up(self):
        callbacks = SSHCallbacks()
        for _ in range(3):
            callbacks.credentials("ssh://host/repo.git", "git", CredentialType.SSH_KEY)
        with pytest.raises(PermanentSyncError):
            callbacks.credentials("ssh://host/repo.git", "git", CredentialType.SSH_KEY)

    def test_rejected_reference_recorded(self):
        callbacks = SSHCallbacks()
        callbacks.push_update_reference("refs/heads/main", None)
        callbacks.push_update_reference("refs/heads/main", "non-fast-forward")
        assert callbacks.rejected == ["refs/heads/main: non-fast-forward"]

    @pytest.mark.parametrize("message,expected", [
        ("Authentication failed for user git", PermanentSyncError),
        ("Permission denied (publickey)", PermanentSyncError),
        ("failed to resolve address for github.com", TransientSyncError),
        ("cannot push non-fastforwardable reference", TransientSyncError),
    ])
    def test_classify(self, message, expected):
        assert type(_classify(OSError(message), "push")) is expected


# =============================================================================
# Sync through an overflowing change channel
# =============================================================================

@pytest.mark.asyncio
async def test_dropped_events_still_sync_every_change(checkout, remote, clock):
    changes = ChangeChannel(capacity=1, clock=clock)
    store = BackingStore(checkout.workdir, AttributeDefaults(uid=os.getuid(), gid=os.getgid()))
    tree = NodeTree.build(store, changes)
    manager = SyncManager(checkout, changes, quiescence=2.0)

    for i in range(5):
        node = await tree.root.create(f"f{i}")
        await node.write(0, f"content {i}".encode())
        await node.flush()
    d = await tree.root.mkdir("d", 0o755)
    await tree.root.rename("f0", d, "f0")
    assert changes.dropped >= 9

    assert not await manager.tick()
    assert manager.dirty

    clock.advance(2.0)
    assert await manager.tick()
    assert not manager.dirty
    assert manager.cycles == 1

    head = remote_head(remote)
    assert sorted(entry.name for entry in head.tree) == ["README", "d", "f1", "f2", "f3", "f4"]
    assert blob_data(remote, "d/f0") == b"content 0"
    assert blob_data(remote, "f4") == b"content 4"
    assert not await manager.tick()
