import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from ecr_mirror.auth import get_docker_credentials_from_auth_token
from ecr_mirror.models import Credentials


class EcrManager:
    """Set of repositories known to exist in ECR, provisioned on demand.

    The set is filled once per run by ``build_cache`` and afterwards only grows
    through ``create``. Every mutation after bootstrap happens under ``_lock`` so
    workers ensuring the same repository never create it twice.
    """

    def __init__(self, client: Any) -> None:
        self.client = client
        self.repositories: dict[str, bool] | None = None
        self._lock = asyncio.Lock()

    def exists(self, name: str) -> bool:
        return bool(self.repositories and self.repositories.get(name))

    async def ensure(self, name: str) -> None:
        async with self._lock:
            if self.exists(name):
                return
            await self.create(name)

    async def create(self, name: str) -> None:
        try:
            await asyncio.to_thread(self.client.create_repository, repositoryName=name)
            logging.info(f"Created ECR repository {name}")
        except ClientError as err:
            if err.response["Error"]["Code"] != "RepositoryAlreadyExistsException":
                raise
            logging.warning(f"ECR repository {name} already exists")

        if self.repositories is None:
            self.repositories = {}
        self.repositories[name] = True

    async def login(self) -> Credentials:
        logging.info("Obtaining authorization token from AWS...")
        try:
            output = await asyncio.to_thread(self.client.get_authorization_token)
        except (BotoCoreError, ClientError) as err:
            logging.error(f"Unable to obtain authorization token: {err}")
            raise

        token, endpoint = "", None
        for auth_data in output.get("authorizationData", []):
            token = auth_data["authorizationToken"]
            endpoint = auth_data.get("proxyEndpoint")

        creds = get_docker_credentials_from_auth_token(token)
        creds.serveraddress = endpoint
        logging.info("Authorization token obtained successfully from AWS...")
        return creds

    async def build_cache(self, next_token: str | None = None) -> None:
        if next_token is None:
            logging.info("Loading list of ECR repositories")

        while True:
            kwargs = {"nextToken": next_token} if next_token else {}
            resp = await asyncio.to_thread(
                self.client.describe_repositories, **kwargs
            )

            if self.repositories is None:
                self.repositories = {}

            for repo in resp.get("repositories", []):
                self.repositories[repo["repositoryName"]] = True

            # no next token means we hit the last page
            next_token = resp.get("nextToken")
            if not next_token:
                break

        logging.info(f"Done loading ECR repositories ({len(self.repositories)})")

    def build_cache_backoff(self) -> Callable[[], Awaitable[None]]:
        async def operation() -> None:
            await self.build_cache(None)

        return operation

    async def existing_tags(self, name: str) -> set[str]:
        tags: set[str] = set()
        kwargs: dict[str, Any] = {
            "repositoryName": name,
            "filter": {"tagStatus": "TAGGED"},
        }
        while True:
            resp = await asyncio.to_thread(self.client.list_images, **kwargs)
            tags.update(
                image["imageTag"]
                for image in resp.get("imageIds", [])
                if image.get("imageTag")
            )
            if not resp.get("nextToken"):
                return tags
            kwargs["nextToken"] = resp["nextToken"]
