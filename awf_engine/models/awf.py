"""The model's structured reply (AWF) after it has passed validation."""

from typing import Any

from pydantic import BaseModel, Field


AWF_ALLOWED_KEYS = ("scn", "txt", "choices", "acts", "val")


class AwfChoice(BaseModel):
    id: str
    label: str


class AwfReply(BaseModel):
    """A validated AWF object.

    ``acts`` stay raw dicts here; the act interpreter parses them into the
    tagged union so unknown or malformed acts become violations rather
    than validation failures.
    """

    scn: str
    txt: str
    choices: list[AwfChoice] = Field(default_factory=list)
    acts: list[dict[str, Any]] = Field(default_factory=list)
    val: str | None = None
