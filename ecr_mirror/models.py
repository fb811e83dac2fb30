from datetime import datetime

from pydantic import BaseModel


class Credentials(BaseModel):
    username: str
    password: str
    serveraddress: str | None = None

    def as_docker_auth(self) -> dict[str, str]:
        auth = {"username": self.username, "password": self.password}
        if self.serveraddress:
            auth["serveraddress"] = self.serveraddress
        return auth


class Tag(BaseModel):
    repository: str
    name: str
    creation_date: datetime | None = None
