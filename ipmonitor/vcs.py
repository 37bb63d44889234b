"""Version-control capability used by the publish workflow.

:class:`VersionControl` is the interface the workflow depends on;
:class:`GitClient` implements it by running the ``git`` binary as a
subprocess (no shell) with a per-step timeout.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ipmonitor.exceptions import GitCommandError
from ipmonitor.utils import utc_now_iso

logger = logging.getLogger(__name__)

NOTHING_TO_COMMIT_MARKERS = ("nothing to commit", "no changes added")


class VersionControl(Protocol):
    """Operations the publish workflow needs from a version-control tool."""

    async def fetch_latest(self) -> None: ...

    async def is_dirty(self) -> bool: ...

    async def stage(self, files: Sequence[str]) -> None: ...

    async def commit(self, message: str) -> bool: ...

    async def publish(self) -> None: ...

    async def revert_last(self) -> None: ...

    async def validate(self) -> Dict[str, Any]: ...


class GitClient:
    """:class:`VersionControl` backed by the ``git`` command line."""

    def __init__(self, repo_dir: str, timeout: float = 60.0, git_binary: str = "git"):
        self.repo_dir = repo_dir
        self.timeout = timeout
        self.git_binary = git_binary

    async def _run(self, step: str, *args: str) -> Tuple[int, str, str]:
        """Run ``git <args>`` and return ``(returncode, stdout, stderr)``.

        Raises:
            GitCommandError: If git cannot be started or times out.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary, *args,
                cwd=self.repo_dir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitCommandError(step, -1, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitCommandError(step, -1, f"timed out after {self.timeout}s") from None

        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def _check(self, step: str, *args: str) -> str:
        code, out, err = await self._run(step, *args)
        if code != 0:
            raise GitCommandError(step, code, err or out)
        return out

    async def fetch_latest(self) -> None:
        logger.info("Pulling latest changes from remote repository")
        await self._check("pull", "pull")

    async def is_dirty(self) -> bool:
        return bool(await self.status_lines())

    async def status_lines(self) -> List[str]:
        out = await self._check("status", "status", "--porcelain")
        return [line for line in out.splitlines() if line.strip()]

    async def stage(self, files: Sequence[str]) -> None:
        targets = list(files) or ["."]
        logger.info("Adding files to git: %s", " ".join(targets))
        await self._check("add", "add", "--", *targets)

    async def commit(self, message: str) -> bool:
        """Commit staged changes; returns ``False`` if there was nothing to commit."""
        logger.info("Committing changes: %s", message)
        code, out, err = await self._run("commit", "commit", "-m", message)
        if code != 0:
            combined = f"{out}\n{err}".lower()
            if any(marker in combined for marker in NOTHING_TO_COMMIT_MARKERS):
                logger.info("No changes to commit")
                return False
            raise GitCommandError("commit", code, err or out)
        return True

    async def publish(self) -> None:
        logger.info("Pushing changes to remote repository")
        await self._check("push", "push")

    async def revert_last(self) -> None:
        await self._check("rollback", "reset", "--soft", "HEAD~1")

    async def current_branch(self) -> str:
        return await self._check("branch", "branch", "--show-current")

    async def remote_url(self) -> Optional[str]:
        code, out, _ = await self._run("config", "config", "--get", "remote.origin.url")
        return out if code == 0 and out else None

    async def last_commit(self) -> str:
        return await self._check("log", "log", "-1", "--format=%H %s")

    async def validate(self) -> Dict[str, Any]:
        """Check that the working tree is usable; never raises."""
        try:
            changes = await self.status_lines()
            return {
                "healthy": True,
                "enabled": True,
                "has_changes": bool(changes),
                "changes": changes,
                "current_branch": await self.current_branch(),
                "remote_url": await self.remote_url(),
                "last_commit": await self.last_commit(),
                "timestamp": utc_now_iso(),
            }
        except GitCommandError as e:
            return {
                "healthy": False,
                "enabled": True,
                "error": str(e),
                "timestamp": utc_now_iso(),
            }
