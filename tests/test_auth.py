import base64
import json

import pytest

from ecr_mirror.auth import (
    DOCKER_HUB_REGISTRY,
    CredentialsError,
    InvalidTokenError,
    get_docker_credentials,
    get_docker_credentials_from_auth_token,
)


def encode(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def write_docker_config(tmp_path, auths) -> str:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"auths": auths}))
    return path


def test_token_decoding():
    creds = get_docker_credentials_from_auth_token(encode("alice:secret"))
    assert creds.username == "alice"
    assert creds.password == "secret"


def test_token_password_keeps_colons():
    creds = get_docker_credentials_from_auth_token(encode("AWS:a:b:c"))
    assert creds.username == "AWS"
    assert creds.password == "a:b:c"


def test_token_without_colon():
    with pytest.raises(InvalidTokenError, match="Invalid token"):
        get_docker_credentials_from_auth_token(encode("alicesecret"))


def test_token_not_base64():
    with pytest.raises(InvalidTokenError, match="Invalid token"):
        get_docker_credentials_from_auth_token("not base64!")


def test_docker_credentials_from_auth_field(tmp_path):
    path = write_docker_config(
        tmp_path, {DOCKER_HUB_REGISTRY: {"auth": encode("bob:hunter2")}}
    )
    creds = get_docker_credentials(DOCKER_HUB_REGISTRY, path)
    assert creds.username == "bob"
    assert creds.password == "hunter2"
    assert creds.serveraddress == DOCKER_HUB_REGISTRY


def test_docker_credentials_matches_bare_host(tmp_path):
    registry = "123.dkr.ecr.eu-west-1.amazonaws.com"
    path = write_docker_config(
        tmp_path, {f"https://{registry}": {"username": "AWS", "password": "pw"}}
    )
    creds = get_docker_credentials(registry, path)
    assert creds.username == "AWS"
    assert creds.as_docker_auth() == {
        "username": "AWS",
        "password": "pw",
        "serveraddress": f"https://{registry}",
    }


def test_docker_credentials_missing_entry(tmp_path):
    path = write_docker_config(tmp_path, {"quay.io": {"auth": encode("a:b")}})
    with pytest.raises(CredentialsError, match="No auth found for ghcr.io"):
        get_docker_credentials("ghcr.io", path)


def test_docker_credentials_helper_entry(tmp_path):
    path = write_docker_config(tmp_path, {"ghcr.io": {}})
    with pytest.raises(CredentialsError):
        get_docker_credentials("ghcr.io", path)


def test_docker_credentials_unreadable_config(tmp_path):
    with pytest.raises(CredentialsError, match="Could not read docker config"):
        get_docker_credentials("ghcr.io", tmp_path / "missing.json")
