import asyncio
import re
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from ecr_mirror.config import Repository
from ecr_mirror.models import Tag
from ecr_mirror.tag_sources import (
    docker_hub_tags,
    get_tag_source,
    github_release_tags,
    hub_repository,
)
from ecr_mirror.utils import filtered_tags, select_tags, true_utcnow


def make_tags(*entries: tuple[str, int | None]) -> list[Tag]:
    now = true_utcnow()
    return [
        Tag(
            repository="nginx",
            name=name,
            creation_date=None if days is None else now - timedelta(days=days),
        )
        for name, days in entries
    ]


def test_filtered_tags():
    job = Repository(
        name="nginx",
        match_tags=[re.compile(r"^1\.\d+")],
        drop_tags=[re.compile(r".*-rc\d*$")],
    )
    tags = make_tags(("1.25", 1), ("1.26-rc1", 1), ("latest", 1), ("1.24", 1))
    assert [t.name for t in filtered_tags(job, tags)] == ["1.25", "1.24"]


def test_filtered_tags_without_match_list():
    job = Repository(name="nginx", drop_tags=[re.compile("latest")])
    tags = make_tags(("1.25", 1), ("latest", 1))
    assert [t.name for t in filtered_tags(job, tags)] == ["1.25"]


def test_select_tags_newest_first_and_capped():
    job = Repository(name="nginx", max_tags=2)
    tags = make_tags(("1.23", 30), ("1.25", 1), ("1.24", 10), ("old", None))
    assert [t.name for t in select_tags(job, tags)] == ["1.25", "1.24"]


def test_select_tags_by_age():
    job = Repository(name="nginx", max_tag_age="7d")
    tags = make_tags(("1.23", 30), ("1.25", 1), ("1.24", 10), ("undated", None))
    assert [t.name for t in select_tags(job, tags)] == ["1.25", "undated"]


def test_select_tags_unlimited():
    job = Repository(name="nginx")
    tags = make_tags(("a", 3), ("b", 2), ("c", 1))
    assert [t.name for t in select_tags(job, tags)] == ["c", "b", "a"]


def test_hub_repository():
    assert hub_repository("nginx") == "library/nginx"
    assert hub_repository("bitnami/redis") == "bitnami/redis"


def test_get_tag_source():
    assert get_tag_source(Repository(name="nginx")) is docker_hub_tags
    assert (
        get_tag_source(Repository(name="x", remote_tags_source="github"))
        is github_release_tags
    )
    with pytest.raises(ValueError, match="Unknown remote_tags_source"):
        get_tag_source(Repository(name="x", remote_tags_source="gitlab"))


def fetch(source, job: Repository, handler) -> list[Tag]:
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as session:
            return await source(session, job)

    return asyncio.run(main())


def test_docker_hub_tags_pages():
    next_page = "https://hub.docker.com/v2/repositories/library/nginx/tags?page=2&page_size=100"
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.params.get("page") == "2":
            return httpx.Response(
                200,
                json={
                    "next": None,
                    "results": [{"name": "1.24", "last_updated": "2023-05-01T10:00:00Z"}],
                },
            )
        return httpx.Response(
            200,
            json={
                "next": next_page,
                "results": [
                    {"name": "1.25", "last_updated": "2023-06-01T10:00:00.123456Z"},
                    {"name": "latest", "last_updated": None},
                ],
            },
        )

    tags = fetch(docker_hub_tags, Repository(name="nginx"), handler)

    assert [t.name for t in tags] == ["1.25", "latest", "1.24"]
    assert tags[0].creation_date == datetime(2023, 6, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
    assert tags[1].creation_date is None
    assert requested[0].startswith(
        "https://hub.docker.com/v2/repositories/library/nginx/tags"
    )
    assert requested[1] == next_page


def test_docker_hub_tags_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "object not found"})

    with pytest.raises(httpx.HTTPStatusError):
        fetch(docker_hub_tags, Repository(name="missing"), handler)


def test_github_release_tags():
    job = Repository(
        name="grafana/grafana",
        remote_tags_source="github",
        remote_tags_config={"repository": "grafana/grafana", "prefix": "v", "token": "t0k"},
    )
    second = "https://api.github.com/repos/grafana/grafana/releases?page=2"

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer t0k"
        if request.url.params.get("page") == "2":
            return httpx.Response(
                200,
                json=[{"tag_name": "v9.0.0", "published_at": "2022-06-01T00:00:00Z"}],
            )
        return httpx.Response(
            200,
            headers={"Link": f'<{second}>; rel="next"'},
            json=[
                {"tag_name": "v10.1.0", "published_at": "2023-09-01T00:00:00Z"},
                {"tag_name": "v10.2.0-beta", "prerelease": True},
                {"tag_name": "v10.3.0", "draft": True},
            ],
        )

    tags = fetch(github_release_tags, job, handler)
    assert [t.name for t in tags] == ["10.1.0", "9.0.0"]
    assert tags[0].repository == "grafana/grafana"


def test_github_release_tags_requires_repository():
    job = Repository(name="grafana/grafana", remote_tags_source="github")
    with pytest.raises(ValueError, match="remote_tags_config.repository"):
        fetch(github_release_tags, job, lambda request: httpx.Response(200, json=[]))
