import pytest

from gitmount.filesystem.backing_store import AttributeDefaults, BackingStore
from gitmount.filesystem.node_tree import NodeTree
from gitmount.gitsync.changes import ChangeChannel


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRepository:
    """Stands in for GitRepository; push failures are queued in `failures`."""

    def __init__(self):
        self.commits = 0
        self.pushes = 0
        self.failures = []

    def commit_all(self, message=None):
        self.commits += 1
        return f"commit-{self.commits}"

    def push(self):
        self.pushes += 1
        if self.failures:
            raise self.failures.pop(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def changes(clock):
    return ChangeChannel(clock=clock)


@pytest.fixture
def workdir(tmp_path):
    root = tmp_path / "work"
    root.mkdir()
    return root


@pytest.fixture
def store(workdir):
    return BackingStore(str(workdir), AttributeDefaults(uid=1000, gid=1000))


@pytest.fixture
def tree(store, changes):
    return NodeTree.build(store, changes)


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def drain(changes):
    """Return every queued event as (path, kind value) pairs."""
    def _drain():
        events = []
        while True:
            event = changes.get_nowait()
            if event is None:
                return events
            events.append((event.path, event.kind.value))
    return _drain
