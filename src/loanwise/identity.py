"""Caller identity passed explicitly into every mutating ledger call."""

from pydantic import BaseModel


class Identity(BaseModel):
    """The acting user, as vouched for by the identity provider."""

    user_id: int
    name: str = ""
    is_staff: bool = False
