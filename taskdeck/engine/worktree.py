"""Git worktree coordination.

Every feature gets its own working copy at a deterministic path
(``<project_root>/<worktree_dir>/<feature_id>``) on branch
``feature/<feature_id>``. Mutating git commands for a project are
serialized behind one asyncio.Lock per project, and a feature's
worktree is reserved by at most one session at a time.

Dirty state is pull-based: ``git status --porcelain`` runs whenever a
caller lists worktrees, nothing is watched.
"""
from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator

from .errors import WorktreeBusyError, WorktreeError, WorktreeLockTimeoutError
from .models import ChangedFile, Worktree, WorktreeDiff

logger = logging.getLogger(__name__)

_FEATURE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
BRANCH_PREFIX = "feature/"


@dataclass
class _ProjectState:
    project_id: str
    root: Path
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # feature_id -> holder (session id)
    reservations: dict[str, str] = field(default_factory=dict)


@dataclass
class _WorktreeEntry:
    """One block of ``git worktree list --porcelain``."""
    path: Path
    branch: str | None = None
    head: str | None = None
    bare: bool = False


class WorktreeCoordinator:
    """Creates, reserves, lists and removes per-feature git worktrees."""

    def __init__(
        self,
        *,
        worktree_dir: str = ".taskdeck/worktrees",
        lock_timeout_seconds: float = 30.0,
        git_command: str = "git",
    ) -> None:
        self._worktree_dir = worktree_dir
        self._lock_timeout = lock_timeout_seconds
        self._git = git_command
        self._projects: dict[str, _ProjectState] = {}

    # ── Projects ──────────────────────────────────────────────

    def register_project(self, project_id: str, root: str | Path) -> Path:
        """Register (or re-point) a project. Returns the resolved root."""
        resolved = Path(root).expanduser().resolve()
        existing = self._projects.get(project_id)
        if existing is not None:
            if existing.root != resolved and existing.reservations:
                raise WorktreeError(
                    f"Project {project_id} has reserved worktrees; "
                    "cannot move its root"
                )
            existing.root = resolved
        else:
            self._projects[project_id] = _ProjectState(project_id, resolved)
        logger.info("Project registered: %s -> %s", project_id, resolved)
        return resolved

    def has_project(self, project_id: str) -> bool:
        return project_id in self._projects

    def project_ids(self) -> list[str]:
        return list(self._projects)

    def project_root(self, project_id: str) -> Path:
        return self._state(project_id).root

    def _state(self, project_id: str) -> _ProjectState:
        state = self._projects.get(project_id)
        if state is None:
            raise WorktreeError(f"Unknown project: {project_id}")
        return state

    # ── Paths ─────────────────────────────────────────────────

    def worktree_base(self, project_id: str) -> Path:
        root = self.project_root(project_id)
        base = (root / self._worktree_dir).resolve()
        if not base.is_relative_to(root):
            raise WorktreeError(
                f"Worktree directory {self._worktree_dir!r} escapes project root {root}"
            )
        return base

    def worktree_path(self, project_id: str, feature_id: str) -> Path:
        """Deterministic, validated path of a feature's worktree."""
        if not _FEATURE_ID_RE.match(feature_id or ""):
            raise WorktreeError(
                f"Invalid feature id {feature_id!r}: "
                "use letters, digits, '.', '_' and '-'"
            )
        base = self.worktree_base(project_id)
        path = (base / feature_id).resolve()
        if path.parent != base:
            raise WorktreeError(f"Feature id {feature_id!r} escapes the worktree directory")
        return path

    @staticmethod
    def branch_name(feature_id: str) -> str:
        return f"{BRANCH_PREFIX}{feature_id}"

    # ── Reservation ───────────────────────────────────────────

    def is_reserved(self, project_id: str, feature_id: str) -> bool:
        state = self._projects.get(project_id)
        return state is not None and feature_id in state.reservations

    def holder(self, project_id: str, feature_id: str) -> str | None:
        state = self._projects.get(project_id)
        return state.reservations.get(feature_id) if state else None

    async def acquire(
        self,
        project_id: str,
        feature_id: str,
        holder: str | None = None,
    ) -> Worktree:
        """Reserve the feature's worktree for *holder*, creating it if needed.

        Raises WorktreeBusyError when another holder has it,
        WorktreeLockTimeoutError when the project's git lock is not
        available in time, WorktreeError on git failures.
        """
        state = self._state(project_id)
        holder = holder or feature_id
        path = self.worktree_path(project_id, feature_id)

        current = state.reservations.get(feature_id)
        if current is not None:
            raise WorktreeBusyError(feature_id, current)
        # Reserve before the first await so a concurrent acquire fails fast.
        state.reservations[feature_id] = holder
        try:
            async with self._project_lock(state):
                await self._ensure_worktree(state, feature_id, path)
            changed = await self.changed_file_count(path)
        except BaseException:
            if state.reservations.get(feature_id) == holder:
                del state.reservations[feature_id]
            raise

        logger.info(
            "Worktree acquired: %s/%s by %s (%d changed files)",
            project_id, feature_id, holder[:8], changed,
        )
        return Worktree(
            path=str(path),
            branch=self.branch_name(feature_id),
            is_main=False,
            changed_files=changed,
            project_id=project_id,
            feature_id=feature_id,
        )

    def release(self, worktree: Worktree) -> None:
        """Clear the reservation. Idempotent; the worktree stays on disk."""
        if worktree.is_main or worktree.feature_id is None:
            return
        state = self._projects.get(worktree.project_id)
        if state is None:
            return
        if state.reservations.pop(worktree.feature_id, None) is not None:
            logger.info(
                "Worktree released: %s/%s", worktree.project_id, worktree.feature_id,
            )

    # ── Removal ───────────────────────────────────────────────

    async def remove(self, worktree: Worktree) -> None:
        """Delete the worktree and its branch. Fails while reserved."""
        if worktree.is_main or worktree.feature_id is None:
            raise WorktreeError("The main worktree cannot be removed")
        await self.remove_feature(worktree.project_id, worktree.feature_id)

    async def remove_feature(self, project_id: str, feature_id: str) -> None:
        state = self._state(project_id)
        path = self.worktree_path(project_id, feature_id)
        self._check_not_reserved(state, feature_id)

        async with self._project_lock(state):
            self._check_not_reserved(state, feature_id)
            if path.exists():
                code, _, stderr = await self._run_git(
                    "worktree", "remove", "--force", str(path),
                    cwd=state.root, check=False,
                )
                if code != 0:
                    raise WorktreeError(
                        f"git worktree remove failed for {path}: {stderr}",
                        stderr=stderr,
                    )
            await self._run_git("worktree", "prune", cwd=state.root, check=False)
            branch = self.branch_name(feature_id)
            if await self._branch_exists(state.root, branch):
                await self._run_git("branch", "-D", branch, cwd=state.root)
        logger.info("Worktree removed: %s/%s", project_id, feature_id)

    @staticmethod
    def _check_not_reserved(state: _ProjectState, feature_id: str) -> None:
        current = state.reservations.get(feature_id)
        if current is not None:
            raise WorktreeBusyError(feature_id, current)

    # ── Queries ───────────────────────────────────────────────

    async def main_worktree(self, project_id: str) -> Worktree:
        root = self.project_root(project_id)
        branch = await self._current_branch(root)
        return Worktree(
            path=str(root),
            branch=branch,
            is_main=True,
            changed_files=await self.changed_file_count(root),
            project_id=project_id,
        )

    async def list_worktrees(self, project_id: str) -> list[Worktree]:
        """All worktrees of the project, main first, with fresh dirty counts."""
        state = self._state(project_id)
        base = self.worktree_base(project_id)
        _, stdout, _ = await self._run_git(
            "worktree", "list", "--porcelain", cwd=state.root,
        )
        entries = [e for e in _parse_worktree_list(stdout) if not e.bare]
        counts = await asyncio.gather(
            *(self.changed_file_count(e.path) for e in entries)
        )

        main: list[Worktree] = []
        features: list[Worktree] = []
        for entry, changed in zip(entries, counts):
            is_main = entry.path == state.root
            feature_id = entry.path.name if entry.path.parent == base else None
            worktree = Worktree(
                path=str(entry.path),
                branch=entry.branch or "(detached)",
                is_main=is_main,
                changed_files=changed,
                project_id=project_id,
                feature_id=None if is_main else feature_id,
            )
            (main if is_main else features).append(worktree)
        return main + sorted(features, key=lambda w: w.path)

    async def changed_file_count(self, path: str | Path) -> int:
        """Number of entries in ``git status --porcelain`` (0 if unreadable)."""
        if not Path(path).is_dir():
            return 0
        code, stdout, stderr = await self._run_git(
            "status", "--porcelain", cwd=Path(path), check=False,
        )
        if code != 0:
            logger.warning("git status failed in %s: %s", path, stderr)
            return 0
        return sum(1 for line in stdout.splitlines() if line.strip())

    async def diff(self, project_id: str, feature_id: str | None = None) -> WorktreeDiff:
        """Uncommitted changes of a feature's worktree.

        Falls back to the project root when the feature has no worktree
        on disk (or when *feature_id* is None). Untracked files show up
        in ``files`` but not in the ``git diff HEAD`` text.
        """
        root = self.project_root(project_id)
        path = root
        if feature_id is not None:
            candidate = self.worktree_path(project_id, feature_id)
            if candidate.is_dir():
                path = candidate
            else:
                logger.debug(
                    "No worktree for %s/%s, diffing project root", project_id, feature_id,
                )
        if not await self._is_git_repo(path):
            raise WorktreeError(f"{path} is not a git repository")

        code, diff_text, stderr = await self._run_git(
            "diff", "HEAD", cwd=path, check=False,
        )
        if code != 0:
            # No commit yet: there is no HEAD to compare against.
            logger.warning("git diff failed in %s: %s", path, stderr)
            diff_text = ""
        _, status, _ = await self._run_git(
            "status", "--porcelain", "--untracked-files=all", cwd=path,
        )
        return WorktreeDiff(
            path=str(path),
            diff=diff_text,
            files=tuple(_parse_status(status)),
        )

    # ── Git plumbing ──────────────────────────────────────────

    @asynccontextmanager
    async def _project_lock(self, state: _ProjectState) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(state.lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError:
            raise WorktreeLockTimeoutError(
                state.project_id, self._lock_timeout,
            ) from None
        try:
            yield
        finally:
            state.lock.release()

    async def _ensure_worktree(
        self, state: _ProjectState, feature_id: str, path: Path,
    ) -> None:
        if not await self._is_git_repo(state.root):
            raise WorktreeError(f"{state.root} is not a git repository")

        _, stdout, _ = await self._run_git(
            "worktree", "list", "--porcelain", cwd=state.root,
        )
        if any(e.path == path for e in _parse_worktree_list(stdout)):
            if path.is_dir():
                logger.debug("Reusing worktree %s", path)
                return
            # Registered but deleted from disk.
            await self._run_git("worktree", "prune", cwd=state.root, check=False)

        if path.exists() and any(path.iterdir()):
            raise WorktreeError(
                f"{path} exists and is not a registered worktree"
            )

        await self._exclude_worktree_dir(state)
        path.parent.mkdir(parents=True, exist_ok=True)
        branch = self.branch_name(feature_id)
        if await self._branch_exists(state.root, branch):
            await self._run_git("worktree", "add", str(path), branch, cwd=state.root)
        else:
            await self._run_git(
                "worktree", "add", "-b", branch, str(path), cwd=state.root,
            )
        logger.info("Worktree created: %s on %s", path, branch)

    async def _exclude_worktree_dir(self, state: _ProjectState) -> None:
        """Keep feature worktrees out of the main checkout's status."""
        base = self.worktree_base(state.project_id)
        pattern = "/" + base.relative_to(state.root).as_posix() + "/"
        code, stdout, _ = await self._run_git(
            "rev-parse", "--git-common-dir", cwd=state.root, check=False,
        )
        if code != 0 or not stdout.strip():
            return
        exclude = (state.root / stdout.strip()).resolve() / "info" / "exclude"
        existing = exclude.read_text(encoding="utf-8") if exclude.is_file() else ""
        if pattern in existing.splitlines():
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        with open(exclude, "a", encoding="utf-8") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write(pattern + "\n")
        logger.debug("Added %s to %s", pattern, exclude)

    async def _is_git_repo(self, root: Path) -> bool:
        code, stdout, _ = await self._run_git(
            "rev-parse", "--is-inside-work-tree", cwd=root, check=False,
        )
        return code == 0 and stdout.strip() == "true"

    async def _branch_exists(self, root: Path, branch: str) -> bool:
        code, _, _ = await self._run_git(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}",
            cwd=root, check=False,
        )
        return code == 0

    async def _current_branch(self, root: Path) -> str:
        code, stdout, _ = await self._run_git(
            "rev-parse", "--abbrev-ref", "HEAD", cwd=root, check=False,
        )
        return stdout.strip() if code == 0 and stdout.strip() else "(unknown)"

    async def _run_git(
        self, *args: str, cwd: Path, check: bool = True,
    ) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._git,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise WorktreeError(f"git executable not found: {self._git}") from exc
        try:
            stdout, stderr = await proc.communicate()
        except BaseException:
            # The project lock must not be released while git still runs.
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            raise
        stdout_str = stdout.decode("utf-8", errors="replace")
        stderr_str = stderr.decode("utf-8", errors="replace").strip()
        if check and proc.returncode != 0:
            raise WorktreeError(
                stderr_str or f"git {args[0]} failed with code {proc.returncode}",
                stderr=stderr_str,
            )
        return proc.returncode, stdout_str, stderr_str


def _parse_worktree_list(output: str) -> list[_WorktreeEntry]:
    entries: list[_WorktreeEntry] = []
    current: _WorktreeEntry | None = None
    for line in output.splitlines():
        if line.startswith("worktree "):
            current = _WorktreeEntry(path=Path(line[len("worktree "):]).resolve())
            entries.append(current)
        elif current is None:
            continue
        elif line.startswith("branch "):
            ref = line[len("branch "):]
            current.branch = ref.removeprefix("refs/heads/")
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):]
        elif line == "bare":
            current.bare = True
    return entries


def _parse_status(output: str) -> list[ChangedFile]:
    files: list[ChangedFile] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(ChangedFile(status=line[:2].strip(), path=path.strip('"')))
    return files
