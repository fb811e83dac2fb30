import logging
from collections.abc import Awaitable, Callable
from datetime import timezone

import dateutil.parser
import httpx

from ecr_mirror.config import Repository
from ecr_mirror.models import Tag

DOCKER_HUB_API = "https://hub.docker.com/v2"
GITHUB_API = "https://api.github.com"
PAGE_SIZE = 100

TagSource = Callable[[httpx.AsyncClient, Repository], Awaitable[list[Tag]]]


def hub_repository(name: str) -> str:
    return name if "/" in name else f"library/{name}"


def parse_date(value: str | None):
    if not value:
        return None
    parsed = dateutil.parser.parse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def docker_hub_tags(session: httpx.AsyncClient, job: Repository) -> list[Tag]:
    repository = hub_repository(job.name)
    url: str | None = f"{DOCKER_HUB_API}/repositories/{repository}/tags"
    params: dict[str, int] | None = {"page_size": PAGE_SIZE}
    tags: list[Tag] = []

    while url:
        response = await session.get(url, params=params)
        response.raise_for_status()
        data = response.json()
        tags.extend(
            Tag(
                repository=job.name,
                name=result["name"],
                creation_date=parse_date(result.get("last_updated")),
            )
            for result in data.get("results", [])
        )
        # "next" already carries the query string
        url, params = data.get("next"), None

    if not tags:
        logging.warning(f"No tags found for {job.name}")
    return tags


async def github_release_tags(
    session: httpx.AsyncClient, job: Repository
) -> list[Tag]:
    """Tags named after the GitHub releases of ``remote_tags_config.repository``.

    An optional ``prefix`` is stripped from release names (``v1.2`` -> ``1.2``)
    and an optional ``token`` authenticates the API requests.
    """
    config = job.remote_tags_config
    repository = config.get("repository")
    if not repository:
        raise ValueError(
            f"remote_tags_config.repository is required for {job.name} github tags"
        )

    headers = {"Accept": "application/vnd.github+json"}
    if token := config.get("token"):
        headers["Authorization"] = f"Bearer {token}"
    prefix = config.get("prefix", "")

    url: str | None = f"{GITHUB_API}/repos/{repository}/releases"
    params: dict[str, int] | None = {"per_page": PAGE_SIZE}
    tags: list[Tag] = []

    while url:
        response = await session.get(url, params=params, headers=headers)
        response.raise_for_status()
        for release in response.json():
            if release.get("draft") or release.get("prerelease"):
                continue
            name = release["tag_name"]
            if prefix and name.startswith(prefix):
                name = name[len(prefix) :]
            tags.append(
                Tag(
                    repository=job.name,
                    name=name,
                    creation_date=parse_date(release.get("published_at")),
                )
            )
        next_link = response.links.get("next")
        url, params = (next_link["url"] if next_link else None), None

    if not tags:
        logging.warning(f"No releases found for {repository}")
    return tags


TAG_SOURCES: dict[str, TagSource] = {
    "dockerhub": docker_hub_tags,
    "github": github_release_tags,
}


def get_tag_source(job: Repository) -> TagSource:
    name = job.remote_tags_source or "dockerhub"
    try:
        return TAG_SOURCES[name]
    except KeyError:
        raise ValueError(f"Unknown remote_tags_source '{name}'") from None
