import asyncio

import pytest
from watchdog.events import FileCreatedEvent, FileModifiedEvent

from managed_indexer import exec_lines, git_utils
from managed_indexer.errors import GitCommandError
from managed_indexer.events import BranchChanged, FileChanged, FileDeleted, ScanEnd, ScanStart
from managed_indexer.git_utils import GitDiff
from managed_indexer.git_watcher import GitStateSnapshot, GitWatcher

pytestmark = pytest.mark.unit


class FakeGit:
    """Stands in for git_utils / exec_lines so no process is spawned."""

    def __init__(self, branch="main", commit="c1", base="main", detached=False):
        self.branch = branch
        self.commit = commit
        self.base = base
        self.detached = detached
        self.diff = GitDiff()
        self.ls_output = []
        self.commands = []
        self.base_calls = 0
        self.diff_calls = []
        self.branch_gate = None
        self.branch_calls = 0
        self.fail_ls = None

    def install(self, monkeypatch, head_path=".git/HEAD"):
        async def is_detached_head(cwd):
            return self.detached

        async def get_current_branch(cwd):
            self.branch_calls += 1
            if self.branch_gate is not None:
                await self.branch_gate.wait()
            return self.branch

        async def get_current_commit_sha(cwd):
            return self.commit

        async def get_base_branch(cwd):
            self.base_calls += 1
            return self.base

        async def get_git_diff(current, base, cwd):
            self.diff_calls.append((current, base))
            return self.diff

        async def get_git_head_path(cwd):
            return head_path

        async def exec_get_lines(cmd, cwd, context=None):
            self.commands.append(list(cmd))
            if self.fail_ls is not None:
                raise self.fail_ls
            for line in self.ls_output:
                yield line

        monkeypatch.setattr(git_utils, "is_detached_head", is_detached_head)
        monkeypatch.setattr(git_utils, "get_current_branch", get_current_branch)
        monkeypatch.setattr(git_utils, "get_current_commit_sha", get_current_commit_sha)
        monkeypatch.setattr(git_utils, "get_base_branch", get_base_branch)
        monkeypatch.setattr(git_utils, "get_git_diff", get_git_diff)
        monkeypatch.setattr(git_utils, "get_git_head_path", get_git_head_path)
        monkeypatch.setattr(exec_lines, "exec_get_lines", exec_get_lines)
        return self


class FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.removed = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        watch = (path, recursive, len(self.scheduled))
        self.scheduled.append((handler, path, recursive))
        return watch

    def remove_handler_for_watch(self, handler, watch):
        self.removed.append(watch)

    def start(self):
        self.started = True

    def is_alive(self):
        return self.started and not self.stopped

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass


def _collect(watcher):
    events = []
    watcher.on_event(events.append)
    return events


def _kinds(events):
    return [type(e) for e in events]


@pytest.fixture
def fake_git(monkeypatch):
    return FakeGit().install(monkeypatch)


@pytest.mark.asyncio
async def test_full_scan_emits_every_tracked_file_in_order(fake_git, tmp_path):
    fake_git.ls_output = [
        "100644 abc123 0\tsrc/app.ts",
        "100644 def456 0\tdocs/my file.md",
        "100755 0a0b0c 0\tscripts/run all.sh",
    ]
    watcher = GitWatcher(str(tmp_path))
    events = _collect(watcher)

    await watcher.scan()

    assert _kinds(events) == [ScanStart, FileChanged, FileChanged, FileChanged, ScanEnd]
    assert all(e.is_base_branch for e in events)
    assert all(e.branch == "main" for e in events)
    assert all(e.watcher is watcher for e in events)
    assert [(e.file_path, e.file_hash) for e in events[1:-1]] == [
        ("src/app.ts", "abc123"),
        ("docs/my file.md", "def456"),
        ("scripts/run all.sh", "0a0b0c"),
    ]
    assert fake_git.commands == [[*exec_lines.GIT, "--literal-pathspecs", "ls-files", "-s"]]
    assert fake_git.diff_calls == []


@pytest.mark.asyncio
async def test_differential_scan_batches_one_hash_lookup(fake_git, tmp_path):
    fake_git.branch = "feature/test"
    fake_git.diff = GitDiff(added=["new-file.ts"], modified=["existing-file.ts"], deleted=[])
    fake_git.ls_output = [
        "100644 abc123 0\tnew-file.ts",
        "100644 def456 0\texisting-file.ts",
    ]
    watcher = GitWatcher(str(tmp_path))
    events = _collect(watcher)

    await watcher.scan()

    assert fake_git.diff_calls == [("feature/test", "main")]
    assert fake_git.commands == [
        [*exec_lines.GIT, "--literal-pathspecs", "ls-files", "-s", "--", "new-file.ts", "existing-file.ts"]
    ]
    assert events == [
        ScanStart(branch="feature/test", is_base_branch=False),
        FileChanged(branch="feature/test", is_base_branch=False, file_path="new-file.ts", file_hash="abc123"),
        FileChanged(branch="feature/test", is_base_branch=False, file_path="existing-file.ts", file_hash="def456"),
        ScanEnd(branch="feature/test", is_base_branch=False),
    ]


@pytest.mark.asyncio
async def test_differential_scan_passes_paths_with_spaces_as_single_arguments(fake_git, tmp_path):
    fake_git.branch = "feature/x"
    fake_git.diff = GitDiff(added=["dir with space/a b.py"])
    fake_git.ls_output = ["100644 123abc 0\tdir with space/a b.py"]
    watcher = GitWatcher(str(tmp_path))
    events = _collect(watcher)

    await watcher.scan()

    assert fake_git.commands[0][-1] == "dir with space/a b.py"
    assert events[1].file_path == "dir with space/a b.py"
    assert events[1].file_hash == "123abc"


@pytest.mark.asyncio
async def test_differential_scan_with_only_deletions_still_ends(fake_git, tmp_path):
    fake_git.branch = "feature/cleanup"
    fake_git.diff = GitDiff(deleted=["old.py", "gone.ts"])
    watcher = GitWatcher(str(tmp_path))
    events = _collect(watcher)

    await watcher.scan()

    assert _kinds(events) == [ScanStart, FileDeleted, FileDeleted, ScanEnd]
    assert [e.file_path for e in events[1:3]] == ["old.py", "gone.ts"]
    assert fake_git.commands == []


@pytest.mark.asyncio
async def test_detached_head_scan_emits_nothing(fake_git, tmp_path):
    fake_git.detached = True
    watcher = GitWatcher(str(tmp_path))
    events = _collect(watcher)

    await watcher.scan()

    assert events == []
    assert fake_git.commands == []
    assert fake_git.branch_calls == 0


@pytest.mark.asyncio
async def test_default_branch_override_skips_detection(fake_git, tmp_path):
    fake_git.branch = "develop"
    watcher = GitWatcher(str(tmp_path), default_branch_override="develop")
    events = _collect(watcher)

    await watcher.scan()

    assert fake_git.base_calls == 0
    assert events[0] == ScanStart(branch="develop", is_base_branch=True)


@pytest.mark.asyncio
async def test_base_branch_comparison_is_case_insensitive(fake_git, tmp_path):
    fake_git.branch = "Main"
    watcher = GitWatcher(str(tmp_path))
    events = _collect(watcher)

    await watcher.scan()

    assert events[0].is_base_branch is True
    assert fake_git.diff_calls == []


@pytest.mark.asyncio
async def test_base_branch_is_resolved_once(fake_git, tmp_path):
    watcher = GitWatcher(str(tmp_path))
    await watcher.scan()
    await watcher.scan()
    assert fake_git.base_calls == 1


@pytest.mark.asyncio
async def test_scan_failure_propagates(fake_git, tmp_path):
    fake_git.fail_ls = GitCommandError(["git", "ls-files"], 128, "fatal: not a git repository")
    watcher = GitWatcher(str(tmp_path))
    events = _collect(watcher)

    with pytest.raises(GitCommandError):
        await watcher.scan()

    assert _kinds(events) == [ScanStart]


def _git_dir(tmp_path, packed_refs=True):
    git_dir = tmp_path / ".git"
    (git_dir / "refs" / "heads").mkdir(parents=True)
    (git_dir / "HEAD").write_text("ref: refs/heads/main\n")
    if packed_refs:
        (git_dir / "packed-refs").write_text("")
    return git_dir


@pytest.mark.asyncio
async def test_start_captures_state_and_watches_git_metadata(fake_git, tmp_path):
    git_dir = _git_dir(tmp_path)
    observer = FakeObserver()
    watcher = GitWatcher(str(tmp_path), observer_factory=lambda: observer)

    await watcher.start()

    assert watcher.current_state == GitStateSnapshot(branch="main", commit="c1")
    assert observer.started
    assert [(path, recursive) for _h, path, recursive in observer.scheduled] == [
        (str(git_dir), False),
        (str(git_dir / "refs" / "heads"), True),
    ]
    watcher.dispose()


@pytest.mark.asyncio
async def test_packed_refs_created_after_start_is_noticed(fake_git, tmp_path):
    git_dir = _git_dir(tmp_path, packed_refs=False)
    observer = FakeObserver()
    watcher = GitWatcher(str(tmp_path), observer_factory=lambda: observer)
    await watcher.start()
    events = _collect(watcher)
    fake_git.commit = "c2"

    git_dir_handler = observer.scheduled[0][0]
    (git_dir / "packed-refs").write_text("")
    git_dir_handler.dispatch(FileCreatedEvent(str(git_dir / "packed-refs")))
    for _ in range(3):
        await asyncio.sleep(0)
    await asyncio.gather(*list(watcher._tasks))

    assert _kinds(events) == [ScanStart, ScanEnd]
    assert watcher.current_state.commit == "c2"
    watcher.dispose()


@pytest.mark.asyncio
async def test_start_when_detached_has_no_snapshot(fake_git, tmp_path):
    _git_dir(tmp_path)
    fake_git.detached = True
    watcher = GitWatcher(str(tmp_path), observer_factory=FakeObserver)

    await watcher.start()

    assert watcher.current_state is None
    watcher.dispose()


@pytest.mark.asyncio
async def test_watch_failure_does_not_abort_other_watches(fake_git, tmp_path):
    _git_dir(tmp_path)

    class FlakyObserver(FakeObserver):
        def schedule(self, handler, path, recursive=False):
            if recursive:
                raise OSError("inotify watch limit reached")
            return super().schedule(handler, path, recursive)

    observer = FlakyObserver()
    watcher = GitWatcher(str(tmp_path), observer_factory=lambda: observer)

    await watcher.start()

    assert [path for _h, path, _r in observer.scheduled] == [str(tmp_path / ".git")]
    assert observer.started
    watcher.dispose()


async def _started(fake_git, tmp_path, observer=None):
    _git_dir(tmp_path)
    observer = observer or FakeObserver()
    watcher = GitWatcher(str(tmp_path), observer_factory=lambda: observer)
    await watcher.start()
    return watcher, observer


@pytest.mark.asyncio
async def test_branch_change_emits_branch_changed_before_rescan(fake_git, tmp_path):
    watcher, _ = await _started(fake_git, tmp_path)
    events = _collect(watcher)
    fake_git.branch = "feature/test"

    await watcher.handle_git_change()

    assert events[0] == BranchChanged(
        branch="feature/test",
        is_base_branch=False,
        previous_branch="main",
        new_branch="feature/test",
    )
    assert _kinds(events) == [BranchChanged, ScanStart, ScanEnd]
    assert watcher.current_state == GitStateSnapshot(branch="feature/test", commit="c1")
    watcher.dispose()


@pytest.mark.asyncio
async def test_commit_only_change_rescans_without_branch_event(fake_git, tmp_path):
    watcher, _ = await _started(fake_git, tmp_path)
    events = _collect(watcher)
    fake_git.commit = "c2"
    fake_git.ls_output = ["100644 abc123 0\tapp.py"]

    await watcher.handle_git_change()

    assert _kinds(events) == [ScanStart, FileChanged, ScanEnd]
    assert watcher.current_state.commit == "c2"
    watcher.dispose()


@pytest.mark.asyncio
async def test_unchanged_state_is_a_no_op(fake_git, tmp_path):
    watcher, _ = await _started(fake_git, tmp_path)
    events = _collect(watcher)

    await watcher.handle_git_change()

    assert events == []
    assert fake_git.commands == []
    watcher.dispose()


@pytest.mark.asyncio
async def test_detaching_clears_state(fake_git, tmp_path):
    watcher, _ = await _started(fake_git, tmp_path)
    events = _collect(watcher)
    fake_git.detached = True

    await watcher.handle_git_change()

    assert watcher.current_state is None
    assert events == []
    watcher.dispose()


@pytest.mark.asyncio
async def test_reattaching_after_detached_rescans_without_branch_event(fake_git, tmp_path):
    fake_git.detached = True
    watcher, _ = await _started(fake_git, tmp_path)
    events = _collect(watcher)
    fake_git.detached = False

    await watcher.handle_git_change()

    assert _kinds(events) == [ScanStart, ScanEnd]
    assert watcher.current_state == GitStateSnapshot(branch="main", commit="c1")
    watcher.dispose()


@pytest.mark.asyncio
async def test_overlapping_triggers_are_dropped(fake_git, tmp_path):
    watcher, _ = await _started(fake_git, tmp_path)
    fake_git.branch_calls = 0
    fake_git.commit = "c2"
    fake_git.branch_gate = asyncio.Event()

    first = asyncio.ensure_future(watcher.handle_git_change())
    while fake_git.branch_calls == 0:
        await asyncio.sleep(0)
    assert watcher.is_processing

    await watcher.handle_git_change()
    assert fake_git.branch_calls == 1

    fake_git.branch_gate.set()
    await first
    assert not watcher.is_processing
    assert watcher.current_state.commit == "c2"
    watcher.dispose()


@pytest.mark.asyncio
async def test_change_failure_is_reported_and_retried(fake_git, tmp_path):
    watcher, _ = await _started(fake_git, tmp_path)
    errors = []
    watcher.on_error(errors.append)
    fake_git.commit = "c2"
    fake_git.fail_ls = GitCommandError(["git", "ls-files"], 1, "boom")

    await watcher.handle_git_change()

    assert len(errors) == 1 and isinstance(errors[0], GitCommandError)
    assert not watcher.is_processing
    assert watcher.current_state.commit == "c1"

    fake_git.fail_ls = None
    events = _collect(watcher)
    await watcher.handle_git_change()
    assert _kinds(events) == [ScanStart, ScanEnd]
    assert watcher.current_state.commit == "c2"
    watcher.dispose()


@pytest.mark.asyncio
async def test_metadata_event_triggers_change_handling(fake_git, tmp_path):
    watcher, observer = await _started(fake_git, tmp_path)
    events = _collect(watcher)
    fake_git.branch = "feature/new"

    head_handler = observer.scheduled[0][0]
    head_handler.dispatch(FileModifiedEvent(str(tmp_path / ".git" / "HEAD")))
    for _ in range(3):
        await asyncio.sleep(0)
    await asyncio.gather(*list(watcher._tasks))

    assert _kinds(events) == [BranchChanged, ScanStart, ScanEnd]
    watcher.dispose()


@pytest.mark.asyncio
async def test_unrelated_git_dir_files_are_ignored(fake_git, tmp_path):
    watcher, observer = await _started(fake_git, tmp_path)
    fake_git.branch_calls = 0

    head_handler = observer.scheduled[0][0]
    head_handler.dispatch(FileModifiedEvent(str(tmp_path / ".git" / "index")))
    await asyncio.sleep(0)

    assert fake_git.branch_calls == 0
    assert not watcher._tasks
    watcher.dispose()


@pytest.mark.asyncio
async def test_dispose_is_idempotent_and_releases_watches(fake_git, tmp_path):
    watcher, observer = await _started(fake_git, tmp_path)
    events = _collect(watcher)

    watcher.dispose()
    watcher.dispose()

    assert len(observer.removed) == 2
    assert observer.stopped
    await watcher.scan()
    assert events == []
