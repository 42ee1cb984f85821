from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from boardsync.models import AuditEvent

_SECRET_MARKERS = ("token", "secret", "password")
_SECRET_KEYS = {"code", "state"}


def _redact(payload: Any) -> Any:
  if isinstance(payload, dict):
    out: dict[str, Any] = {}
    for k, v in payload.items():
      key = str(k).lower()
      if key in _SECRET_KEYS or any(m in key for m in _SECRET_MARKERS):
        out[k] = "[redacted]"
      else:
        out[k] = _redact(v)
    return out
  if isinstance(payload, list):
    return [_redact(v) for v in payload]
  if isinstance(payload, str) and len(payload) > 1000:
    return payload[:1000]
  return payload


async def write_audit(
  db: AsyncSession,
  *,
  event_type: str,
  entity_type: str,
  entity_id: str | None,
  actor_id: str | None = None,
  payload: dict[str, Any] | None = None,
) -> None:
  # Mural/Airtable payloads may echo credentials back; never persist them.
  db.add(
    AuditEvent(
      actor_id=actor_id,
      event_type=event_type,
      entity_type=entity_type,
      entity_id=entity_id,
      payload=_redact(jsonable_encoder(payload or {})),
    )
  )
