"""
Durable mapping store over the Airtable `Mural Boards` table.

Writes walk an ordered list of payload shapes because the `Project` column is a
link field in some bases, a plain text field in others, and missing in a few.
Each attempt is classified from Airtable's structured `error.type`; only
field-configuration rejections move on to the next shape.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from boardsync.airtable.client import (
  AirtableApiError,
  AirtableAuth,
  WriteOutcome,
  airtable_list_records,
  airtable_try_write,
  formula_quote,
)
from boardsync.boards.fields import BOARD_FIELDS, PROJECT_FIELDS, as_bool, as_datetime, as_text, field_name, pick_field
from boardsync.boards.types import BoardMapping
from boardsync.config import settings
from boardsync.errors import SchemaMismatch, UpstreamUnavailable

logger = logging.getLogger(__name__)

ShapeBuilder = Callable[[dict[str, Any], str | None, str], "dict[str, Any] | None"]


class MappingStore(Protocol):
  async def resolve_project_key(self, project_ref: str) -> str | None: ...

  async def list_active(self, project_refs: list[str], purpose: str, user_ref: str | None = None) -> list[BoardMapping]: ...

  async def find_active(self, project_refs: list[str], user_ref: str, purpose: str, board_id: str) -> BoardMapping | None: ...

  async def create(self, mapping: BoardMapping, *, project_key: str | None) -> BoardMapping: ...

  async def update(self, mapping: BoardMapping, *, board_url: str | None, workspace_id: str | None) -> BoardMapping: ...

  async def link_project(self, record_id: str, project_key: str) -> bool: ...

  async def deactivate(self, mapping: BoardMapping) -> None: ...

  async def demote(self, mapping: BoardMapping) -> None: ...


def is_record_id(value: str | None) -> bool:
  v = (value or "").strip()
  return v.startswith("rec") and len(v) >= 14 and v.isalnum()


def mapping_from_record(record: dict[str, Any]) -> BoardMapping | None:
  f = record.get("fields") if isinstance(record.get("fields"), dict) else {}
  board_id = as_text(pick_field(f, BOARD_FIELDS, "board_id"))
  if not board_id:
    return None
  link = as_text(pick_field(f, BOARD_FIELDS, "project_link"))
  created = as_datetime(pick_field(f, BOARD_FIELDS, "created_at")) or as_datetime(record.get("createdTime"))
  return BoardMapping(
    project_ref=as_text(pick_field(f, BOARD_FIELDS, "project_ref")) or (link or ""),
    user_ref=as_text(pick_field(f, BOARD_FIELDS, "user_ref")) or "",
    purpose=as_text(pick_field(f, BOARD_FIELDS, "purpose")) or "",
    board_id=board_id,
    board_url=as_text(pick_field(f, BOARD_FIELDS, "board_url")),
    workspace_id=as_text(pick_field(f, BOARD_FIELDS, "workspace_id")),
    is_primary=as_bool(pick_field(f, BOARD_FIELDS, "is_primary")),
    is_active=as_bool(pick_field(f, BOARD_FIELDS, "is_active"), default=True),
    created_at=created,
    record_id=record.get("id") if isinstance(record.get("id"), str) else None,
    project_key=link if is_record_id(link) else None,
    source="store",
  )


def _base_fields(mapping: BoardMapping) -> dict[str, Any]:
  fields: dict[str, Any] = {
    field_name(BOARD_FIELDS, "project_ref"): mapping.project_ref,
    field_name(BOARD_FIELDS, "user_ref"): mapping.user_ref,
    field_name(BOARD_FIELDS, "purpose"): mapping.purpose,
    field_name(BOARD_FIELDS, "board_id"): mapping.board_id,
    field_name(BOARD_FIELDS, "is_primary"): bool(mapping.is_primary),
    field_name(BOARD_FIELDS, "is_active"): True,
  }
  if mapping.board_url:
    fields[field_name(BOARD_FIELDS, "board_url")] = mapping.board_url
  if mapping.workspace_id:
    fields[field_name(BOARD_FIELDS, "workspace_id")] = mapping.workspace_id
  return fields


def _link_object(base: dict[str, Any], key: str | None, raw: str) -> dict[str, Any] | None:
  if not key:
    return None
  return {**base, field_name(BOARD_FIELDS, "project_link"): [{"id": key}]}


def _link_array(base: dict[str, Any], key: str | None, raw: str) -> dict[str, Any] | None:
  if not key:
    return None
  return {**base, field_name(BOARD_FIELDS, "project_link"): [key]}


def _scalar_text(base: dict[str, Any], key: str | None, raw: str) -> dict[str, Any] | None:
  return {**base, field_name(BOARD_FIELDS, "project_link"): raw}


def _bare(base: dict[str, Any], key: str | None, raw: str) -> dict[str, Any] | None:
  return dict(base)


CREATE_SHAPES: list[tuple[str, ShapeBuilder]] = [
  ("link_object", _link_object),
  ("link_array", _link_array),
  ("scalar_text", _scalar_text),
  ("bare", _bare),
]
STRUCTURED_SHAPES = {"link_object", "link_array"}


def _unavailable(table: str, exc: AirtableApiError) -> UpstreamUnavailable:
  return UpstreamUnavailable(
    f"Airtable request to '{table}' failed",
    details={"statusCode": exc.status_code, "type": exc.error_type, "message": exc.message},
  )


class AirtableMappingStore:
  def __init__(
    self,
    auth: AirtableAuth,
    *,
    boards_table: str | None = None,
    projects_table: str | None = None,
  ) -> None:
    self.auth = auth
    self.boards_table = boards_table or settings.airtable_boards_table
    self.projects_table = projects_table or settings.airtable_projects_table

  async def _list(self, table: str, formula: str) -> list[dict]:
    try:
      return await airtable_list_records(auth=self.auth, table=table, formula=formula)
    except AirtableApiError as e:
      raise _unavailable(table, e) from e

  async def _write(self, fields: dict[str, Any], *, record_id: str | None = None) -> WriteOutcome:
    try:
      return await airtable_try_write(auth=self.auth, table=self.boards_table, fields=fields, record_id=record_id)
    except AirtableApiError as e:
      raise _unavailable(self.boards_table, e) from e

  async def resolve_project_key(self, project_ref: str) -> str | None:
    ref = (project_ref or "").strip()
    if not ref:
      return None
    if is_record_id(ref):
      return ref
    clauses = [
      f"{{{name}}}={formula_quote(ref)}"
      for logical in ("local_id", "name")
      for name in PROJECT_FIELDS[logical]
    ]
    # Unknown column names make the formula itself invalid, so try them one by one.
    for clause in clauses:
      try:
        rows = await airtable_list_records(auth=self.auth, table=self.projects_table, formula=clause, max_records=1)
      except AirtableApiError as e:
        if e.unavailable:
          raise _unavailable(self.projects_table, e) from e
        continue
      for row in rows:
        rid = row.get("id")
        if isinstance(rid, str) and is_record_id(rid):
          return rid
    return None

  def _active_formula(self, project_refs: list[str], purpose: str, user_ref: str | None) -> str:
    refs = [r for r in dict.fromkeys(project_refs) if r]
    pid = field_name(BOARD_FIELDS, "project_ref")
    ref_clause = "OR(" + ",".join(f"{{{pid}}}={formula_quote(r)}" for r in refs) + ")"
    parts = [
      ref_clause,
      f"{{{field_name(BOARD_FIELDS, 'purpose')}}}={formula_quote(purpose)}",
      f"{{{field_name(BOARD_FIELDS, 'is_active')}}}",
    ]
    if user_ref:
      parts.append(f"{{{field_name(BOARD_FIELDS, 'user_ref')}}}={formula_quote(user_ref)}")
    return "AND(" + ",".join(parts) + ")"

  async def list_active(self, project_refs: list[str], purpose: str, user_ref: str | None = None) -> list[BoardMapping]:
    if not any(project_refs):
      return []
    # every active row; ranking happens locally
    rows = await self._list(self.boards_table, self._active_formula(project_refs, purpose, user_ref))
    out: list[BoardMapping] = []
    for row in rows:
      m = mapping_from_record(row)
      if m is not None and m.is_active:
        out.append(m)
    return out

  async def find_active(self, project_refs: list[str], user_ref: str, purpose: str, board_id: str) -> BoardMapping | None:
    for m in await self.list_active(project_refs, purpose, user_ref):
      if m.board_id == board_id.strip():
        return m
    return None

  async def create(self, mapping: BoardMapping, *, project_key: str | None) -> BoardMapping:
    base = _base_fields(mapping)
    rejected: list[dict[str, Any]] = []
    for shape, build in CREATE_SHAPES:
      fields = build(base, project_key, mapping.project_ref)
      if fields is None:
        logger.debug("boards.register shape=%s skipped (no project key)", shape)
        continue
      outcome = await self._write(fields)
      logger.info(
        "boards.register shape=%s outcome=%s status=%s type=%s body=%s",
        shape,
        outcome.kind,
        outcome.status_code,
        outcome.error_type,
        outcome.detail[:500],
      )
      if outcome.accepted:
        created = mapping_from_record(outcome.record or {}) or mapping
        if outcome.record and isinstance(outcome.record.get("id"), str):
          created.record_id = outcome.record["id"]
        created.project_key = project_key
        if project_key and shape not in STRUCTURED_SHAPES and created.record_id:
          await self.link_project(created.record_id, project_key)
        return created
      if outcome.kind == "rejected_fatal":
        raise UpstreamUnavailable(
          f"Airtable rejected the write to '{self.boards_table}'",
          details={"statusCode": outcome.status_code, "type": outcome.error_type, "body": outcome.detail, "shape": shape},
        )
      rejected.append({"shape": shape, "type": outcome.error_type, "body": outcome.detail})
    raise SchemaMismatch(
      f"No payload shape was accepted by '{self.boards_table}'",
      details={"table": self.boards_table, "fields": sorted(base.keys()), "attempts": rejected},
    )

  async def update(self, mapping: BoardMapping, *, board_url: str | None, workspace_id: str | None) -> BoardMapping:
    if not mapping.record_id:
      raise SchemaMismatch("Cannot update a mapping without a record id", details={"table": self.boards_table})
    core = {
      field_name(BOARD_FIELDS, "board_id"): mapping.board_id,
      field_name(BOARD_FIELDS, "is_primary"): bool(mapping.is_primary),
      field_name(BOARD_FIELDS, "is_active"): True,
    }
    full = dict(core)
    if board_url:
      full[field_name(BOARD_FIELDS, "board_url")] = board_url
    if workspace_id:
      full[field_name(BOARD_FIELDS, "workspace_id")] = workspace_id
    shapes = [("full", full)] + ([("core", core)] if full != core else [])
    rejected: list[dict[str, Any]] = []
    for shape, fields in shapes:
      outcome = await self._write(fields, record_id=mapping.record_id)
      logger.info(
        "boards.update shape=%s outcome=%s status=%s type=%s", shape, outcome.kind, outcome.status_code, outcome.error_type
      )
      if outcome.accepted:
        if shape == "full":
          mapping.board_url = board_url or mapping.board_url
          mapping.workspace_id = workspace_id or mapping.workspace_id
        mapping.is_active = True
        return mapping
      if outcome.kind == "rejected_fatal":
        raise UpstreamUnavailable(
          f"Airtable rejected the update of '{self.boards_table}'",
          details={"statusCode": outcome.status_code, "type": outcome.error_type, "body": outcome.detail},
        )
      rejected.append({"shape": shape, "type": outcome.error_type})
    raise SchemaMismatch(
      f"No update shape was accepted by '{self.boards_table}'",
      details={"table": self.boards_table, "fields": sorted(full.keys()), "attempts": rejected},
    )

  async def link_project(self, record_id: str, project_key: str) -> bool:
    link = field_name(BOARD_FIELDS, "project_link")
    for shape, value in (("link_object", [{"id": project_key}]), ("link_array", [project_key])):
      try:
        outcome = await self._write({link: value}, record_id=record_id)
      except UpstreamUnavailable as e:
        logger.warning("boards.link_project failed record=%s: %s", record_id, e.message)
        return False
      if outcome.accepted:
        return True
      logger.debug("boards.link_project shape=%s rejected type=%s", shape, outcome.error_type)
    return False

  async def deactivate(self, mapping: BoardMapping) -> None:
    if not mapping.record_id:
      return
    outcome = await self._write({field_name(BOARD_FIELDS, "is_active"): False}, record_id=mapping.record_id)
    if not outcome.accepted:
      logger.warning("boards.deactivate rejected record=%s type=%s", mapping.record_id, outcome.error_type)
      return
    mapping.is_active = False

  async def demote(self, mapping: BoardMapping) -> None:
    if not mapping.record_id:
      return
    outcome = await self._write({field_name(BOARD_FIELDS, "is_primary"): False}, record_id=mapping.record_id)
    if outcome.accepted:
      mapping.is_primary = False
