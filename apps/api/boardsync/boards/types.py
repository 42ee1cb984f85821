from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal

PURPOSE_REFLEXIVE = "reflexive_journal"
ANON_USER = "anon"

JOURNAL_CATEGORIES: tuple[str, ...] = ("perceptions", "procedures", "decisions", "introspections")

MappingSource = Literal["explicit", "cache", "store", "side_cache", "fallback", "registered"]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class BoardMapping:
  project_ref: str
  user_ref: str
  purpose: str
  board_id: str
  board_url: str | None = None
  workspace_id: str | None = None
  is_primary: bool = False
  is_active: bool = True
  created_at: datetime | None = None
  record_id: str | None = None
  project_key: str | None = None
  source: MappingSource = "store"

  def rank_key(self) -> tuple[bool, datetime]:
    return (bool(self.is_primary), self.created_at or _EPOCH)

  def with_source(self, source: MappingSource) -> BoardMapping:
    return replace(self, source=source)


@dataclass
class OAuthTokenRecord:
  access_token: str
  refresh_token: str | None = None
  expires_at: float | None = None
  token_type: str | None = None
  scope: str | None = None
  extra: dict[str, Any] = field(default_factory=dict)

  @classmethod
  def from_dict(cls, data: dict[str, Any]) -> OAuthTokenRecord:
    known = {"access_token", "refresh_token", "expires_at", "token_type", "scope"}
    expires_at = data.get("expires_at")
    return cls(
      access_token=str(data.get("access_token") or ""),
      refresh_token=(str(data["refresh_token"]) if data.get("refresh_token") else None),
      expires_at=(float(expires_at) if isinstance(expires_at, (int, float)) else None),
      token_type=data.get("token_type") if isinstance(data.get("token_type"), str) else None,
      scope=data.get("scope") if isinstance(data.get("scope"), str) else None,
      extra={k: v for k, v in data.items() if k not in known},
    )

  def to_dict(self) -> dict[str, Any]:
    out: dict[str, Any] = dict(self.extra)
    out["access_token"] = self.access_token
    if self.refresh_token:
      out["refresh_token"] = self.refresh_token
    if self.expires_at is not None:
      out["expires_at"] = self.expires_at
    if self.token_type:
      out["token_type"] = self.token_type
    if self.scope:
      out["scope"] = self.scope
    return out


@dataclass
class StickyNote:
  id: str
  text: str
  x: float | None
  y: float | None
  width: float | None
  height: float | None
  created_on: float | None
  tag_ids: list[str]
  tag_names: list[str]
  title: str = ""

  @property
  def positioned(self) -> bool:
    return self.y is not None


@dataclass
class SyncOutcome:
  widget_id: str
  action: Literal["updated-empty", "created-new"]
  board_id: str
  tags_applied: bool = True


@dataclass
class SetupResult:
  status: Literal["complete", "pending"]
  board_id: str
  board_url: str | None
  workspace: dict[str, Any]
  room: dict[str, Any]
  folder: dict[str, Any] | None
  template_copied: bool
  probe_attempts: int
  project_key: str | None = None
  warnings: list[dict[str, Any]] = field(default_factory=list)
