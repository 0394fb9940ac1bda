# roster/transport/schemas.py
from typing import Literal

from pydantic import BaseModel, Field


class CallCardsIn(BaseModel):
    mode: Literal["bulk", "single", "custom"] = "bulk"
    member_id: str | None = None
    member_ids: list[str] = Field(default_factory=list)
    body: str | None = Field(default=None, max_length=1600)
    subject: str | None = Field(default=None, max_length=200)


class PushIn(BaseModel):
    hours: int = Field(default=0, ge=0, le=23)
    minutes: int = Field(default=0, ge=0, le=59)
    notify: bool = True
    pushed_by: str | None = Field(default=None, max_length=128)
    document_ref: str | None = Field(default=None, max_length=512)


class JobQueuedOut(BaseModel):
    job_id: str


class PushOut(BaseModel):
    push_id: str
    hours: int
    minutes: int
    notify: bool


class ActivityOut(BaseModel):
    type: str
    member_id: str | None = None
    recipient: str | None = None
    external_id: str | None = None
    created_at: str | None = None
