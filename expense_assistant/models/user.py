"""Authenticated caller model."""

from pydantic import BaseModel


class CurrentUser(BaseModel):
    """The user a request is scoped to, taken from the access token."""

    id: str
    username: str = ""
