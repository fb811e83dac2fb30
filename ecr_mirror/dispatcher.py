import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ecr_mirror.config import QUEUE_SIZE, Repository
from ecr_mirror.mirror import Mirror, RunContext

MirrorFactory = Callable[[RunContext], Any]


class Dispatcher:
    """Bounded job queue drained by a fixed pool of workers.

    The queue's unfinished-task counter is the completion barrier: ``submit``
    raises it, every worker lowers it exactly once per job, and ``wait`` returns
    once it drops to zero. Workers live for the whole process and are reused by
    every run.
    """

    def __init__(
        self,
        mirror_factory: MirrorFactory = Mirror,
        queue_size: int = QUEUE_SIZE,
        job_timeout: float | None = None,
    ) -> None:
        self.mirror_factory = mirror_factory
        self.job_timeout = job_timeout
        self.queue: asyncio.Queue[tuple[Repository, RunContext]] = asyncio.Queue(
            maxsize=queue_size
        )
        self.workers: list[asyncio.Task[None]] = []

    @property
    def started(self) -> bool:
        return bool(self.workers)

    def start(self, count: int) -> None:
        if self.started:
            return
        logging.info(f"Starting {count} workers")
        self.workers = [
            asyncio.create_task(self.worker(i), name=f"mirror-worker-{i}")
            for i in range(count)
        ]

    async def submit(self, job: Repository, context: RunContext) -> None:
        # blocks while the queue is full
        await self.queue.put((job, context))

    async def wait(self) -> None:
        await self.queue.join()

    async def worker(self, worker_id: int) -> None:
        logging.debug(f"Starting worker {worker_id}")
        while True:
            job, context = await self.queue.get()
            try:
                await self.process(job, context)
            finally:
                self.queue.task_done()

    async def process(self, job: Repository, context: RunContext) -> None:
        try:
            mirror = self.mirror_factory(context)
            await mirror.setup(job)
        except Exception as err:
            logging.error(f"Failed to setup mirror for repository {job.name}: {err}")
            return

        try:
            await asyncio.wait_for(mirror.work(), timeout=self.job_timeout)
        except asyncio.TimeoutError:
            logging.error(
                f"Mirror of repository {job.name} timed out after {self.job_timeout}s"
            )
        except Exception as err:
            logging.error(f"Mirror of repository {job.name} failed: {err}")
