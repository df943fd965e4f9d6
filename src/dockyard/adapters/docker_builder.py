"""Build system that turns a working area into a local Docker image."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from uuid import uuid4

import docker
from docker.errors import APIError, BuildError, ImageNotFound

from dockyard.core.contracts import BuildRequest, BuildState, BuildStatus
from dockyard.core.swap_controller import PROJECT_LABEL

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _BuildJob:
    status: BuildStatus
    tag: str
    task: asyncio.Task[None] | None = None


class DockerImageBuilder:
    """Build images from the project's Dockerfile in the background.

    ``submit`` returns immediately; callers poll ``status`` until the build
    finishes, then read the image tag from ``artifact``. Only the newest
    ``keep_finished`` finished jobs are remembered.
    """

    def __init__(
        self, client: docker.DockerClient | None = None, *, keep_finished: int = 50
    ) -> None:
        self._docker = client
        self._keep_finished = keep_finished
        self._jobs: dict[str, _BuildJob] = {}

    @property
    def _client(self) -> docker.DockerClient:
        if self._docker is None:
            self._docker = docker.from_env()
        return self._docker

    async def submit(self, request: BuildRequest) -> str:
        build_id = f"{request.project_id}-{request.tag}-{uuid4().hex[:8]}"
        job = _BuildJob(
            status=BuildStatus(build_id=build_id, state=BuildState.PENDING),
            tag=f"{request.image}:{request.tag}",
        )
        self._evict_finished()
        self._jobs[build_id] = job
        job.task = asyncio.create_task(self._run(job, request))
        logger.info(f"Build {build_id} submitted for {request.source_path} ({request.branch})")
        return build_id

    async def status(self, build_id: str) -> BuildStatus:
        return self._job(build_id).status

    async def artifact(self, build_id: str) -> str:
        job = self._job(build_id)
        if job.status.state is not BuildState.SUCCESS:
            msg = f"Build {build_id} has no artifact ({job.status.state.value})"
            raise RuntimeError(msg)
        return job.tag

    async def discard(self, artifact: str) -> None:
        """Remove the image ``artifact`` and forget the jobs that built it."""
        for build_id in [i for i, job in self._jobs.items() if job.tag == artifact]:
            if self._jobs[build_id].status.finished:
                del self._jobs[build_id]
        try:
            await asyncio.to_thread(self._client.images.remove, artifact)
        except ImageNotFound:
            return
        logger.info(f"Removed image {artifact}")

    async def _run(self, job: _BuildJob, request: BuildRequest) -> None:
        build_id = job.status.build_id
        job.status = BuildStatus(build_id=build_id, state=BuildState.RUNNING)
        try:
            await asyncio.to_thread(
                self._client.images.build,
                path=str(request.source_path),
                tag=job.tag,
                rm=True,
                labels={PROJECT_LABEL: request.project_id},
            )
        except (BuildError, APIError) as exc:
            logger.warning(f"Build {build_id} failed: {exc}")
            job.status = BuildStatus(build_id=build_id, state=BuildState.FAILURE, message=str(exc))
            return
        except Exception as exc:
            logger.exception(f"Build {build_id} crashed")
            job.status = BuildStatus(build_id=build_id, state=BuildState.FAILURE, message=str(exc))
            return
        logger.info(f"Build {build_id} produced {job.tag}")
        job.status = BuildStatus(build_id=build_id, state=BuildState.SUCCESS)

    def _evict_finished(self) -> None:
        finished = [i for i, job in self._jobs.items() if job.status.finished]
        for build_id in finished[: max(0, len(finished) - self._keep_finished)]:
            del self._jobs[build_id]

    def _job(self, build_id: str) -> _BuildJob:
        job = self._jobs.get(build_id)
        if job is None:
            msg = f"Unknown build {build_id}"
            raise LookupError(msg)
        return job
