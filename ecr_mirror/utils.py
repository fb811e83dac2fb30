import logging
import os
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import StrEnum
from logging import LogRecord
from pathlib import Path

from ecr_mirror.config import LOG_FORMAT, Args, Repository
from ecr_mirror.models import Tag

LOG_DIR = Path("logs")


class Colors(StrEnum):
    RED = "\033[31m"
    CRED = "\033[91m"
    YELLOW = "\033[33m"
    RESET = "\033[0m"


class ColoredFormatter(logging.Formatter):
    def __init__(self, fmt: str | None = None, *args, **kwargs) -> None:
        self.format_ = fmt
        self.FORMATS = {
            logging.WARNING: f"{Colors.YELLOW}{self.format_}{Colors.RESET}",
            logging.ERROR: f"{Colors.RED}{self.format_}{Colors.RESET}",
            logging.CRITICAL: f"{Colors.CRED}{self.format_}{Colors.RESET}",
        }
        super().__init__(fmt, *args, **kwargs)

    def format(self, record: LogRecord) -> str:
        log_fmt = self.FORMATS.get(record.levelno, self.format_)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def parse_log_level(environ: Mapping[str, str] = os.environ) -> int:
    raw = environ.get("LOG_LEVEL", "").strip()
    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw.upper())
    if not isinstance(level, int):
        logging.critical(f"Unknown LOG_LEVEL '{raw}'")
        sys.exit(1)
    return level


def init_logger(args: Args) -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    if not args.http_logs:
        logging.getLogger("httpx").disabled = True

    file_handler = logging.FileHandler(LOG_DIR / "mirror.log")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    logging.basicConfig(
        level=parse_log_level(), handlers=[file_handler, stream_handler], force=True
    )


def true_utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def filtered_tags(job: Repository, tags: list[Tag]) -> list[Tag]:
    res = []
    for tag in tags:
        if job.match_tags and not any(rule.match(tag.name) for rule in job.match_tags):
            continue
        if any(rule.match(tag.name) for rule in job.drop_tags):
            continue
        res.append(tag)
    return res


def select_tags(job: Repository, tags: list[Tag]) -> list[Tag]:
    """Pick the tags to mirror: filtered, young enough, newest first, capped."""
    selected = filtered_tags(job, tags)

    if job.max_tag_age is not None:
        oldest = true_utcnow() - job.max_tag_age
        selected = [
            tag
            for tag in selected
            if tag.creation_date is None or tag.creation_date >= oldest
        ]

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    selected.sort(key=lambda tag: tag.creation_date or epoch, reverse=True)

    if job.max_tags:
        selected = selected[: job.max_tags]
    return selected
