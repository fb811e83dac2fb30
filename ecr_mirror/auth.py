import base64
import binascii
import json
import logging
import os
from pathlib import Path

from ecr_mirror.models import Credentials

DOCKER_HUB_REGISTRY = "https://index.docker.io/v1/"


class CredentialsError(Exception):
    pass


class InvalidTokenError(CredentialsError):
    pass


def docker_config_path() -> Path:
    if config_dir := os.environ.get("DOCKER_CONFIG"):
        return Path(config_dir) / "config.json"
    return Path.home() / ".docker" / "config.json"


def _registry_keys(registry: str) -> list[str]:
    bare = registry.removeprefix("https://").removeprefix("http://").rstrip("/")
    return [registry, bare, f"https://{bare}", f"https://{bare}/"]


def get_docker_credentials(registry: str, path: Path | None = None) -> Credentials:
    """Look up credentials for ``registry`` in the local docker config."""
    path = path or docker_config_path()
    try:
        with open(path, "r") as f:
            auths = json.load(f).get("auths", {})
    except (OSError, json.JSONDecodeError) as err:
        raise CredentialsError(f"Could not read docker config {path}: {err}") from err

    for key in _registry_keys(registry):
        entry = auths.get(key)
        if entry is None:
            continue
        if entry.get("auth"):
            creds = get_docker_credentials_from_auth_token(entry["auth"])
        elif entry.get("username"):
            creds = Credentials(
                username=entry["username"], password=entry.get("password", "")
            )
        else:
            # entries managed by a credential helper carry no secrets
            break
        creds.serveraddress = key
        return creds

    raise CredentialsError(f"No auth found for {registry}")


def get_docker_credentials_from_auth_token(token: str) -> Credentials:
    logging.debug("Decoding token...")
    try:
        decoded = base64.b64decode(token, validate=True).decode()
    except (binascii.Error, UnicodeDecodeError) as err:
        raise InvalidTokenError(f"Invalid token: {err}") from err

    parts = decoded.split(":", 1)
    if len(parts) < 2:
        raise InvalidTokenError(
            f"Invalid token: expected two parts, got {len(parts)}"
        )

    logging.debug("Token successfully decoded")
    return Credentials(username=parts[0], password=parts[1])
