from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from boardsync.boards.types import ANON_USER, PURPOSE_REFLEXIVE


class MuralSetupIn(BaseModel):
  uid: str = ANON_USER
  projectId: str = ""
  projectName: str = Field(default="", max_length=200)
  workspaceId: str | None = None
  purpose: str = PURPOSE_REFLEXIVE


class MuralSetupOut(BaseModel):
  ok: bool = True
  status: Literal["complete", "pending"]
  muralId: str
  boardUrl: str | None = None
  workspace: dict[str, Any]
  room: dict[str, Any]
  folder: dict[str, Any] | None = None
  templateCopied: bool
  probeAttempts: int
  projectRecordId: str | None = None
  warnings: list[dict[str, Any]] = []


class MuralResolveOut(BaseModel):
  ok: bool = True
  muralId: str
  boardUrl: str | None = None
  workspaceId: str | None = None
  projectRecordId: str | None = None
  isPrimary: bool = False
  createdAt: datetime | None = None
  source: str


class JournalSyncIn(BaseModel):
  uid: str = ANON_USER
  projectId: str | None = None
  muralId: str | None = None
  purpose: str = PURPOSE_REFLEXIVE
  category: str = ""
  description: str = ""
  tags: list[str] = []

  @field_validator("tags", mode="before")
  @classmethod
  def _tags(cls, v: object) -> object:
    if v is None:
      return []
    if isinstance(v, list):
      return [str(t).strip() for t in v if t is not None and str(t).strip()]
    return v


class JournalSyncOut(BaseModel):
  ok: bool = True
  stickyId: str
  action: Literal["updated-empty", "created-new"]
  muralId: str
  tagsApplied: bool


class AwaitUrlIn(BaseModel):
  uid: str = ANON_USER
  projectId: str = Field(min_length=1)
  purpose: str = PURPOSE_REFLEXIVE


class AwaitUrlOut(BaseModel):
  ok: bool = True
  status: Literal["complete", "pending"]
  muralId: str
  boardUrl: str | None = None
  attempts: int


class MuralVerifyOut(BaseModel):
  ok: bool = True
  activeWorkspaceId: str | None = None
  me: dict[str, Any]
