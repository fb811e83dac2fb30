import asyncio
import logging
import os
import sys
from collections.abc import Callable, Mapping
from typing import Any, NoReturn

import aiodocker
import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from ecr_mirror.auth import (
    DOCKER_HUB_REGISTRY,
    CredentialsError,
    get_docker_credentials,
)
from ecr_mirror.backoff import ExponentialBackoff, retry_notify
from ecr_mirror.config import Config, filter_repositories, resolve_workers
from ecr_mirror.dispatcher import Dispatcher
from ecr_mirror.ecr import EcrManager
from ecr_mirror.mirror import RunContext
from ecr_mirror.models import Credentials

DEFAULT_TIMEOUT = 20


def fatal(message: str) -> NoReturn:
    logging.critical(message)
    sys.exit(1)


def ecr_client() -> Any:
    return boto3.client("ecr")


def http_session() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": "ecr-mirror"},
        timeout=DEFAULT_TIMEOUT,
        follow_redirects=True,
    )


def notify_error(err: Exception, delay: float) -> None:
    logging.error(f"{err} ({delay:.2f}s)")


class RunController:
    """Runs one mirror pass per scheduler tick.

    Ticks never overlap: a tick that fires while the previous run is still
    draining its jobs is skipped.
    """

    def __init__(
        self,
        config: Config,
        dispatcher: Dispatcher | None = None,
        docker_factory: Callable[[], Any] = aiodocker.Docker,
        ecr_client_factory: Callable[[], Any] = ecr_client,
        session_factory: Callable[[], Any] = http_session,
        backoff: ExponentialBackoff | None = None,
        environ: Mapping[str, str] = os.environ,
    ) -> None:
        self.config = config
        self.dispatcher = dispatcher or Dispatcher(job_timeout=config.job_timeout)
        self.docker_factory = docker_factory
        self.ecr_client_factory = ecr_client_factory
        self.session_factory = session_factory
        self.backoff = backoff or ExponentialBackoff()
        self.environ = environ
        self._running = asyncio.Lock()

    async def tick(self) -> bool:
        if self._running.locked():
            logging.warning("Previous mirror run is still in progress, skipping")
            return False
        async with self._running:
            await self.run()
        return True

    async def run(self) -> None:
        logging.info("Starting run of scheduled mirror job")
        config = self.config

        if not config.target.registry:
            fatal("Missing `target -> registry` yaml config")

        workers = resolve_workers(config, self.environ)

        logging.info("Creating Docker client")
        try:
            docker = self.docker_factory()
        except Exception as err:
            fatal(f"Could not create Docker client: {err}")
        try:
            info = await docker.system.info()
        except Exception as err:
            await docker.close()
            fatal(f"Could not connect to Docker daemon: {err}")
        logging.info(
            f"Connected to Docker daemon: {info.get('Name')} @ {info.get('ServerVersion')}"
        )

        logging.info("Creating AWS client")
        try:
            ecr = EcrManager(self.ecr_client_factory())
        except Exception as err:
            await docker.close()
            fatal(f"Unable to load AWS SDK config: {err}")

        try:
            await retry_notify(ecr.build_cache_backoff(), self.backoff, notify_error)
        except Exception as err:
            await docker.close()
            fatal(f"Could not build ECR cache: {err}")

        session = self.session_factory()
        try:
            push_auth, pull_auth = await self.resolve_credentials(ecr)
            context = RunContext(
                config=config,
                docker=docker,
                ecr=ecr,
                session=session,
                push_auth=push_auth,
                pull_auth=pull_auth,
            )
            await self.dispatch(context, workers)
        finally:
            await session.aclose()
            await docker.close()

        logging.info("Done")

    async def dispatch(self, context: RunContext, workers: int) -> None:
        self.dispatcher.start(workers)

        prefix = self.environ.get("PREFIX", "")
        repositories = filter_repositories(self.config.repositories, prefix)
        if prefix:
            logging.info(
                f"Mirroring {len(repositories)} repositories matching prefix '{prefix}'"
            )

        for repo in repositories:
            await self.dispatcher.submit(repo, context)

        # wait for all workers to complete
        await self.dispatcher.wait()

    async def resolve_credentials(
        self, ecr: EcrManager
    ) -> tuple[Credentials | None, Credentials | None]:
        push_auth = pull_auth = None
        try:
            if self.config.oidc:
                push_auth = await ecr.login()
            else:
                push_auth = get_docker_credentials(self.config.target.registry)
        except (BotoCoreError, ClientError, CredentialsError) as err:
            logging.warning(
                f"No push credentials for {self.config.target.registry}: {err}"
            )

        try:
            pull_auth = get_docker_credentials(DOCKER_HUB_REGISTRY)
        except CredentialsError as err:
            logging.debug(f"Pulling anonymously: {err}")

        return push_auth, pull_auth


def report_tick(task: asyncio.Task[bool]) -> None:
    if task.cancelled():
        return
    if err := task.exception():
        logging.error(f"Scheduled mirror run failed: {err!r}")


async def watch(controller: RunController, minutes: int) -> None:
    logging.info(f"Scheduling job to run every {minutes} minutes")
    ticks: set[asyncio.Task[bool]] = set()
    while True:
        task = asyncio.create_task(controller.tick())
        ticks.add(task)
        task.add_done_callback(ticks.discard)
        task.add_done_callback(report_tick)
        await asyncio.sleep(minutes * 60)
