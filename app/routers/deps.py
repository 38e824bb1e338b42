"""Shared request dependencies."""
from fastapi import Header


def request_actor(x_actor: str | None = Header(default=None, alias="X-Actor")) -> str:
    """Return the caller label recorded on audit rows."""

    actor = (x_actor or "").strip()
    return actor[:100] if actor else "api:anonymous"
