import logging
from dataclasses import dataclass
from typing import Any

import aiodocker
import httpx

from ecr_mirror.config import Config, Repository
from ecr_mirror.ecr import EcrManager
from ecr_mirror.models import Credentials, Tag
from ecr_mirror.tag_sources import get_tag_source
from ecr_mirror.utils import select_tags


@dataclass
class RunContext:
    """Clients shared by every job of a single run."""

    config: Config
    docker: aiodocker.Docker
    ecr: EcrManager
    session: httpx.AsyncClient
    push_auth: Credentials | None = None
    pull_auth: Credentials | None = None


def stream_errors(messages: Any) -> list[str]:
    if not isinstance(messages, list):
        messages = [messages]
    return [
        str(message["error"])
        for message in messages
        if isinstance(message, dict) and message.get("error")
    ]


class Mirror:
    def __init__(self, context: RunContext) -> None:
        self.context = context
        self.job: Repository | None = None
        self.target = ""
        self.tags: list[Tag] = []

    @property
    def remote(self) -> str:
        return f"{self.context.config.target.registry}/{self.target}"

    async def setup(self, job: Repository) -> None:
        config = self.context.config
        ecr = self.context.ecr
        self.job = job
        self.target = job.target_name(config.target.prefix)

        existing: set[str] = set()
        if config.args.debug and not ecr.exists(self.target):
            logging.info(f"[debug] Would create ECR repository {self.target}")
        else:
            await ecr.ensure(self.target)
            existing = await ecr.existing_tags(self.target)

        tag_source = get_tag_source(job)
        found = await tag_source(self.context.session, job)
        selected = select_tags(job, found)

        self.tags = [tag for tag in selected if tag.name not in existing]
        logging.info(
            f"Repository {job.name}: {len(found)} tags found, "
            f"{len(selected)} selected, {len(self.tags)} to mirror into {self.target}"
        )

    async def work(self) -> list[str]:
        if self.job is None:
            raise RuntimeError("Mirror.work() called before setup()")

        errors: list[str] = []
        for tag in self.tags:
            if self.context.config.args.debug:
                logging.info(
                    f"[debug] Would mirror {self.job.name}:{tag.name} to {self.remote}"
                )
                continue
            errors.extend(await self.mirror_tag(tag))

        logging.info(f"Finished '{self.job.name}' with {len(errors)} errors")
        return errors

    async def mirror_tag(self, tag: Tag) -> list[str]:
        docker = self.context.docker
        source = f"{self.job.name}:{tag.name}"
        destination = f"{self.remote}:{tag.name}"
        pull_auth = self.context.pull_auth
        push_auth = self.context.push_auth

        try:
            logging.info(f"Pulling {source}")
            pulled = await docker.images.pull(
                self.job.name,
                tag=tag.name,
                auth=pull_auth.as_docker_auth() if pull_auth else None,
            )
            if errors := stream_errors(pulled):
                return self.tag_errors(source, errors)

            await docker.images.tag(source, self.remote, tag=tag.name)

            logging.info(f"Pushing {destination}")
            pushed = await docker.images.push(
                self.remote,
                tag=tag.name,
                auth=push_auth.as_docker_auth() if push_auth else None,
            )
            if errors := stream_errors(pushed):
                return self.tag_errors(destination, errors)
        except aiodocker.exceptions.DockerError as err:
            return self.tag_errors(source, [f"code: {err.status}, text: {err.message}"])
        finally:
            await self.remove_local(source, destination)

        return []

    async def remove_local(self, *images: str) -> None:
        for image in images:
            try:
                await self.context.docker.images.delete(image, force=True)
            except aiodocker.exceptions.DockerError as err:
                if err.status != 404:
                    logging.warning(f"Could not remove local image {image}: {err}")

    def tag_errors(self, image: str, errors: list[str]) -> list[str]:
        errors = [f"Error mirroring {image}. {error}" for error in errors]
        for error in errors:
            logging.error(error)
        return errors
