from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from dateutil import parser as dateparser

# Ordered candidate field names per logical field. The first name is the one
# written; the rest are tolerated on read (renamed columns, snake_case imports).
BOARD_FIELDS: dict[str, list[str]] = {
  "project_ref": ["Project ID", "project_id", "ProjectId"],
  "project_link": ["Project", "Projects"],
  "user_ref": ["UID", "uid", "User ID"],
  "purpose": ["Purpose", "purpose"],
  "board_id": ["Mural ID", "mural_id", "Board ID"],
  "board_url": ["Board URL", "board_url", "URL"],
  "workspace_id": ["Workspace ID", "workspace_id"],
  "is_primary": ["Primary?", "Primary", "primary"],
  "is_active": ["Active", "Active?", "active"],
  "created_at": ["Created At", "Created time", "created_at"],
}

PROJECT_FIELDS: dict[str, list[str]] = {
  "local_id": ["LocalId", "Local ID", "local_id", "Project ID", "ID"],
  "name": ["Name", "Project Name", "Title"],
}


def field_name(table: dict[str, list[str]], logical: str) -> str:
  return table[logical][0]


def pick_field(fields: dict[str, Any] | None, table: dict[str, list[str]], logical: str, default: Any = None) -> Any:
  if not isinstance(fields, dict):
    return default
  for name in table.get(logical, []):
    if name in fields and fields[name] not in (None, ""):
      return fields[name]
  return default


def as_text(value: Any) -> str | None:
  if value is None:
    return None
  if isinstance(value, list):
    # Link/lookup fields come back as arrays.
    value = value[0] if value else None
    if value is None:
      return None
  if isinstance(value, dict):
    value = value.get("id") or value.get("name")
  s = str(value).strip()
  return s or None


def as_bool(value: Any, default: bool = False) -> bool:
  if value is None:
    return default
  if isinstance(value, bool):
    return value
  if isinstance(value, (int, float)):
    return value != 0
  return str(value).strip().lower() in {"true", "yes", "1", "y", "checked"}


def as_datetime(value: Any) -> datetime | None:
  if isinstance(value, datetime):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
  if not isinstance(value, str) or not value.strip():
    return None
  try:
    dt = dateparser.parse(value)
  except (ValueError, OverflowError):
    return None
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)
