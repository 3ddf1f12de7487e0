from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from loguru import logger

from codeloop.cancellation import CancellationToken
from codeloop.errors import CapacityExceededError, ErrorKind, JobNotFoundError, OperationCancelled
from codeloop.session import utc_now
from codeloop.tool import ToolResult

DEFAULT_POLL_TIMEOUT_MS = 5_000


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class BackgroundJob:
    job_id: str
    tool_name: str
    token: CancellationToken
    description: str = ""
    invocation_id: str = ""
    status: JobStatus = JobStatus.PENDING
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None
    delivered: bool = False
    output: list[str] = field(default_factory=list)
    error: str | None = None
    task: asyncio.Task | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

    def append_output(self, text: str) -> None:
        if text:
            self.output.append(text)

    def snapshot(self) -> BackgroundJobSnapshot:
        return BackgroundJobSnapshot(
            job_id=self.job_id,
            tool_name=self.tool_name,
            status=self.status,
            description=self.description,
            started_at=self.started_at,
            completed_at=self.completed_at,
            output="".join(self.output),
            error=self.error,
        )


@dataclass(frozen=True)
class BackgroundJobSnapshot:
    job_id: str
    tool_name: str
    status: JobStatus
    description: str
    started_at: str
    completed_at: str | None
    output: str
    error: str | None

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "toolName": self.tool_name,
            "status": self.status.value,
            "description": self.description,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "output": self.output,
            "error": self.error,
        }


JobRunner = Callable[[BackgroundJob], Awaitable[ToolResult]]


class BackgroundJobRegistry:
    """Process-local table of tool executions that outlive one dispatch.

    Capacity is checked when a job is started: over-cap requests raise
    ``CapacityExceededError`` and nothing is queued. At most
    ``max_finished_jobs`` finished jobs are kept; the oldest ones whose
    final state was already returned by ``poll`` go first.
    """

    def __init__(self, *, max_total_jobs: int = 16, max_finished_jobs: int = 32):
        self._max_total_jobs = max_total_jobs
        self._max_finished_jobs = max_finished_jobs
        self._jobs: dict[str, BackgroundJob] = {}

    def running_count(self, tool_name: str | None = None) -> int:
        return sum(
            1
            for job in self._jobs.values()
            if not job.status.is_terminal and (tool_name is None or job.tool_name == tool_name)
        )

    def start(
        self,
        tool_name: str,
        runner: JobRunner,
        *,
        max_for_tool: int = 0,
        description: str = "",
        invocation_id: str = "",
    ) -> BackgroundJob:
        if max_for_tool > 0 and self.running_count(tool_name) >= max_for_tool:
            logger.warning(f"Background capacity reached for {tool_name} ({max_for_tool} running)")
            raise CapacityExceededError(
                f"{tool_name} already has {max_for_tool} background jobs running; "
                "wait for one to finish or cancel one first"
            )
        if self._max_total_jobs > 0 and self.running_count() >= self._max_total_jobs:
            logger.warning(f"Global background capacity reached ({self._max_total_jobs} running)")
            raise CapacityExceededError(
                f"{self._max_total_jobs} background jobs are already running; "
                "wait for one to finish or cancel one first"
            )

        job = BackgroundJob(
            job_id=f"job_{uuid4().hex[:12]}",
            tool_name=tool_name,
            token=CancellationToken(),
            description=description,
            invocation_id=invocation_id,
            status=JobStatus.RUNNING,
        )
        self._jobs[job.job_id] = job
        job.task = asyncio.create_task(self._run(job, runner))
        logger.debug(f"Background job {job.job_id} started for {tool_name}")
        return job

    async def _run(self, job: BackgroundJob, runner: JobRunner) -> None:
        try:
            result = await job.token.run(runner(job))
        except (asyncio.CancelledError, OperationCancelled):
            job.status = JobStatus.CANCELLED
            job.error = job.token.reason or "cancelled"
        except Exception as ex:
            logger.warning(f"Background job {job.job_id} ({job.tool_name}) failed: {ex}")
            job.status = JobStatus.FAILED
            job.error = str(ex)
        else:
            rendered = result.render()
            if rendered:
                job.output = [rendered]
            if result.success:
                job.status = JobStatus.SUCCEEDED
            elif result.error is not None and result.error.kind == ErrorKind.CANCELLED:
                job.status = JobStatus.CANCELLED
                job.error = result.error.message
            else:
                job.status = JobStatus.FAILED
                job.error = result.error.message if result.error else "failed"
        finally:
            job.completed_at = utc_now()
            job.done.set()
            logger.debug(f"Background job {job.job_id} finished: {job.status.value}")
            self._prune_finished()

    def get(self, job_id: str) -> BackgroundJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"No background job with id {job_id!r}")
        return job

    async def poll(
        self,
        job_id: str,
        *,
        block: bool = False,
        timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS,
    ) -> BackgroundJobSnapshot:
        job = self.get(job_id)
        if block and not job.status.is_terminal:
            try:
                await asyncio.wait_for(asyncio.shield(job.done.wait()), timeout=max(0, timeout_ms) / 1000)
            except asyncio.TimeoutError:
                pass
        snapshot = job.snapshot()
        if snapshot.status.is_terminal:
            job.delivered = True
        return snapshot

    def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        job.token.cancel("cancelled by request")
        logger.info(f"Cancellation requested for background job {job_id}")
        return True

    def cleanup(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or not job.status.is_terminal:
            return False
        del self._jobs[job_id]
        return True

    def _prune_finished(self) -> None:
        if self._max_finished_jobs <= 0:
            return
        finished = [job for job in self._jobs.values() if job.status.is_terminal]
        excess = len(finished) - self._max_finished_jobs
        if excess <= 0:
            return
        finished.sort(key=lambda j: (not j.delivered, j.completed_at or ""))
        for job in finished[:excess]:
            if not job.delivered:
                logger.warning(f"Dropping unread result of background job {job.job_id} ({job.tool_name})")
            self.cleanup(job.job_id)

    def list_jobs(self) -> list[BackgroundJobSnapshot]:
        return [job.snapshot() for job in self._jobs.values()]

    async def shutdown(self) -> None:
        tasks = []
        for job in self._jobs.values():
            if not job.status.is_terminal:
                self.cancel(job.job_id)
            if job.task is not None:
                tasks.append(job.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
