"""Publish workflow: pull, stage, commit and push the updated record.

The whole pull -> dirty-check -> stage -> commit -> push sequence is
retried as a unit with exponential backoff, because transient failures
are almost always in the network steps.  If a commit was created but
could never be pushed, the local commit is soft-reverted once.  The
workflow reports failures through :class:`PublishResult` and never
raises.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ipmonitor.exceptions import RetryExhausted, RollbackFailed, VersionControlStepFailure
from ipmonitor.models import PublishResult
from ipmonitor.utils import retry_with_backoff, sanitize_commit_message
from ipmonitor.vcs import VersionControl

logger = logging.getLogger(__name__)


def build_commit_message(new_address: str, old_address: Optional[str] = None) -> str:
    if old_address:
        return f"update ip {old_address} -> {new_address}"
    return f"update ip {new_address}"


class PersistenceWorkflow:
    """Publishes address changes through a :class:`VersionControl`.

    Args:
        vcs: Version-control implementation.
        target_files: Files staged explicitly.  With an empty list the
            workflow stages everything, and a clean tree is a no-op.
        enabled: Master switch for version control.
        auto_commit: Commit on change; when ``False`` publishing is
            skipped but reported as success.
        max_retries: Attempts for the whole sequence.
        backoff_seconds: Base delay between attempts.
        max_message_length: Commit message truncation bound.
    """

    def __init__(self, vcs: VersionControl, target_files: Sequence[str] = (),
                 enabled: bool = True, auto_commit: bool = True,
                 max_retries: int = 3, backoff_seconds: float = 2.0,
                 max_message_length: int = 100):
        self.vcs = vcs
        self.target_files = list(target_files)
        self.enabled = enabled
        self.auto_commit = auto_commit
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_message_length = max_message_length

    async def _step(self, name: str, operations: List[str],
                    fn: Callable[[], Awaitable[Any]]) -> Any:
        operations.append(name)
        try:
            return await fn()
        except VersionControlStepFailure:
            raise
        except Exception as e:
            raise VersionControlStepFailure(name, e) from e

    async def publish(self, new_address: str, old_address: Optional[str] = None) -> PublishResult:
        """Commit and push the address change.

        Returns:
            :class:`PublishResult`; ``success`` is ``False`` once the
            retries are exhausted.
        """
        if not self.enabled:
            logger.info("Git operations are disabled")
            return PublishResult(success=True, message="Git operations disabled")
        if not self.auto_commit:
            logger.info("Auto-commit is disabled")
            return PublishResult(success=True, message="Auto-commit disabled")

        message = sanitize_commit_message(
            build_commit_message(new_address, old_address),
            max_length=self.max_message_length,
        )
        state: Dict[str, Any] = {"committed": False, "published": False, "operations": []}

        async def attempt() -> PublishResult:
            operations: List[str] = []
            state["operations"] = operations

            await self._step("pull", operations, self.vcs.fetch_latest)

            dirty = await self._step("status", operations, self.vcs.is_dirty)
            # A commit left unpushed by an earlier attempt still needs the push
            if not dirty and not self.target_files and not state["committed"]:
                logger.info("No changes detected, skipping commit")
                return PublishResult(success=True, message="No changes to commit",
                                     operations=list(operations))

            await self._step("add", operations, lambda: self.vcs.stage(self.target_files))
            if await self._step("commit", operations, lambda: self.vcs.commit(message)):
                state["committed"] = True
            await self._step("push", operations, self.vcs.publish)
            state["published"] = True

            return PublishResult(
                success=True,
                message=f"Git operations completed: {' -> '.join(operations)}",
                operations=list(operations),
            )

        logger.info("Committing IP change: %s", message)
        try:
            result = await retry_with_backoff(
                attempt,
                attempts=self.max_retries,
                base_delay=self.backoff_seconds,
                label="git publish",
            )
        except RetryExhausted as e:
            failure = e.last_error
            step = failure.step if isinstance(failure, VersionControlStepFailure) else "unknown"
            logger.error("Failed to commit IP change after %d attempts: %s", e.attempts, failure)

            rolled_back = None
            if state["committed"] and not state["published"]:
                rolled_back = await self._rollback()

            return PublishResult(
                success=False,
                message=f"Git operations failed at {step}: {failure}",
                operations=list(state["operations"]),
                rolled_back=rolled_back,
            )

        logger.info("IP change committed successfully")
        return result

    async def _rollback(self) -> bool:
        """Soft-revert the unpushed commit; failures are only logged."""
        logger.warning("Attempting to rollback last commit")
        try:
            await self.vcs.revert_last()
        except Exception as e:
            logger.error("%s", RollbackFailed(f"Rollback failed: {e}"))
            return False
        logger.info("Rollback completed successfully")
        return True

    async def validate(self) -> Dict[str, Any]:
        if not self.enabled:
            return {"healthy": True, "enabled": False, "message": "Git service is disabled"}
        result = await self.vcs.validate()
        result.setdefault("config", {
            "max_retries": self.max_retries,
            "auto_commit": self.auto_commit,
            "target_files": self.target_files,
        })
        return result
