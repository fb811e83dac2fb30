import logging
import os
import re
import sys
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from yaml import YAMLError, safe_load

DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_SCHEDULE_MINUTES = 60
QUEUE_SIZE = 5
LOG_FORMAT = "[%(asctime)s] [%(levelname)-8s] |> %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")
DURATION_UNITS = {
    "ms": "milliseconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(value: str) -> timedelta:
    """Parse durations like ``72h``, ``1h30m`` or ``2w``."""
    raw = value.strip().replace(" ", "")
    if not raw:
        raise ValueError("empty duration")
    if DURATION_PART.sub("", raw):
        raise ValueError(f"invalid duration '{value}'")
    total = timedelta()
    for amount, unit in DURATION_PART.findall(raw):
        total += timedelta(**{DURATION_UNITS[unit]: float(amount)})
    return total


def resolve_env_value(value: str) -> str:
    if isinstance(value, str) and value.startswith("__ENV:"):
        return os.environ.get(value[6:].strip(), "")
    return value


class Repository(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    match_tags: list[re.Pattern] = Field(default_factory=list, alias="match_tag")
    drop_tags: list[re.Pattern] = Field(default_factory=list, alias="ignore_tag")
    max_tags: int = 0
    max_tag_age: timedelta | None = None
    remote_tags_source: str | None = None
    remote_tags_config: dict[str, str] = Field(default_factory=dict)
    target_prefix: str | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, name: str) -> str:
        name = name.strip()
        if not name:
            raise ValueError("repository name must not be empty")
        return name

    @field_validator("match_tags", "drop_tags", mode="before")
    @classmethod
    def compile_tag_regexps(cls, regexps: list[str] | None) -> list[re.Pattern]:
        if not regexps:
            return []
        return [r if isinstance(r, re.Pattern) else re.compile(r) for r in regexps]

    @field_validator("max_tags")
    @classmethod
    def check_max_tags(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_tags must not be negative")
        return value

    @field_validator("max_tag_age", mode="before")
    @classmethod
    def parse_max_tag_age(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @field_validator("remote_tags_config", mode="before")
    @classmethod
    def handle_env_vars(cls, values: dict[str, Any] | None) -> dict[str, str]:
        if not values:
            return {}
        return {key: resolve_env_value(str(v)) for key, v in values.items()}

    def target_name(self, default_prefix: str) -> str:
        prefix = default_prefix if self.target_prefix is None else self.target_prefix
        return f"{prefix}{self.name}"


class Target(BaseModel):
    registry: str = ""
    prefix: str = ""

    @field_validator("registry")
    @classmethod
    def strip_registry(cls, value: str) -> str:
        return value.strip().removeprefix("https://").strip("/")


class Args(BaseModel):
    once: bool = False
    debug: bool = False
    http_logs: bool = False

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> "Args":
        parser = ArgumentParser(
            description="Mirror container image repositories into ECR",
            formatter_class=ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run a single mirror pass instead of the periodic schedule",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--debug",
            action="store_true",
            help="Only log the tags that would be mirrored, nothing is pulled or pushed",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--http-logs",
            action="store_true",
            help="Enable http logs for every request",
            required=False,
            default=False,
        )
        args = parser.parse_args(argv)
        return cls(once=args.once, debug=args.debug, http_logs=args.http_logs)


class Config(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workers: int = 0
    repositories: list[Repository] = Field(default_factory=list)
    target: Target = Field(default_factory=Target)
    oidc: bool = Field(default=False, alias="enableOidc")
    schedule_minutes: int = Field(
        default=DEFAULT_SCHEDULE_MINUTES, alias="scheduleMinutes"
    )
    job_timeout_minutes: int | None = Field(default=None, alias="jobTimeoutMinutes")
    args: Args = Field(default_factory=Args)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Config":
        return Config.model_validate(data)

    @field_validator("workers")
    @classmethod
    def set_workers(cls, value: int) -> int:
        if value < 0:
            logging.error("Workers must not be negative. Using CPU count")
            return 0
        return value

    @field_validator("schedule_minutes")
    @classmethod
    def set_schedule_minutes(cls, value: int) -> int:
        if value <= 0:
            logging.error(
                f"ScheduleMinutes must be greater than 0. Set {DEFAULT_SCHEDULE_MINUTES}"
            )
            return DEFAULT_SCHEDULE_MINUTES
        return value

    @field_validator("job_timeout_minutes")
    @classmethod
    def set_job_timeout(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            logging.error("JobTimeoutMinutes must be greater than 0. Timeout disabled")
            return None
        return value

    @property
    def job_timeout(self) -> float | None:
        if self.job_timeout_minutes is None:
            return None
        return self.job_timeout_minutes * 60.0


def config_path(environ: Mapping[str, str] = os.environ) -> Path:
    return Path(environ.get("CONFIG_FILE") or DEFAULT_CONFIG_FILE)


def load_config(args: Args, path: Path | None = None) -> Config:
    path = path or config_path()
    logging.info(f"Reading config from file {path}")
    try:
        with open(path, "r") as conf_file:
            data = safe_load(conf_file)
    except OSError as err:
        logging.critical(f"Could not read config file: {err}")
        sys.exit(1)
    except YAMLError as err:
        logging.critical(f"Could not parse config file: {err}")
        sys.exit(1)

    if not isinstance(data, dict):
        logging.critical(f"Could not parse config file: {path} is not a mapping")
        sys.exit(1)

    try:
        return Config.from_dict({**data, "args": args})
    except ValidationError as e:
        logging.critical(f"Invalid config: {e}")
        sys.exit(1)


def resolve_workers(config: Config, environ: Mapping[str, str] = os.environ) -> int:
    """Worker count: NUM_WORKERS env, else config value, else CPU count."""
    workers = config.workers or os.cpu_count() or 1

    if raw := environ.get("NUM_WORKERS"):
        try:
            workers = int(raw)
        except ValueError as err:
            logging.critical(f"Could not parse NUM_WORKERS env: {err}")
            sys.exit(1)
        if workers <= 0:
            logging.critical(f"NUM_WORKERS must be greater than 0, got {workers}")
            sys.exit(1)

    return workers


def filter_repositories(
    repositories: list[Repository], prefix: str | None
) -> list[Repository]:
    if not prefix:
        return list(repositories)
    return [repo for repo in repositories if repo.name.startswith(prefix)]
