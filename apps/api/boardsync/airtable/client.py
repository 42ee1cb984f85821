from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import httpx

# Airtable rejections that mean "this payload shape does not fit the table's
# field configuration"; another shape may still be accepted.
RETRYABLE_ERROR_TYPES = frozenset(
  {
    "UNKNOWN_FIELD_NAME",
    "INVALID_VALUE_FOR_COLUMN",
    "INVALID_RECORD_ID",
    "CANNOT_ACCEPT_VALUE",
    "INVALID_MULTIPLE_CHOICE_OPTIONS",
    "ROW_DOES_NOT_EXIST",
  }
)


class AirtableApiError(RuntimeError):
  def __init__(self, *, status_code: int, message: str, error_type: str | None = None, body: Any = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.message = message
    self.error_type = error_type
    self.body = body

  @property
  def unavailable(self) -> bool:
    return self.status_code == 0 or self.status_code == 429 or self.status_code >= 500


def _extract_airtable_error(payload: Any) -> tuple[str | None, str]:
  if isinstance(payload, dict):
    err = payload.get("error")
    if isinstance(err, dict):
      etype = err.get("type") if isinstance(err.get("type"), str) else None
      msg = err.get("message") if isinstance(err.get("message"), str) else None
      return etype, (msg or etype or "Airtable request failed")
    if isinstance(err, str):
      return err, err
  if isinstance(payload, str) and payload.strip():
    return None, payload.strip()[:500]
  return None, "Airtable request failed"


def safe_text(payload: Any, limit: int = 500) -> str:
  s = payload if isinstance(payload, str) else repr(payload)
  return s if len(s) <= limit else s[:limit] + "…"


@dataclass
class AirtableAuth:
  base_id: str
  api_key: str
  api_base: str = "https://api.airtable.com/v0"
  timeout: float = 15.0
  transport: httpx.AsyncBaseTransport | None = None

  def httpx_client(self) -> httpx.AsyncClient:
    headers = {
      "Authorization": f"Bearer {self.api_key}",
      "Accept": "application/json",
      "Content-Type": "application/json",
    }
    return httpx.AsyncClient(
      base_url=self.api_base.rstrip("/"),
      headers=headers,
      timeout=self.timeout,
      transport=self.transport,
    )

  def table_path(self, table: str) -> str:
    return f"/{self.base_id}/{quote(table, safe='')}"


@dataclass
class WriteOutcome:
  kind: Literal["accepted", "rejected_retryable", "rejected_fatal"]
  status_code: int
  record: dict | None = None
  error_type: str | None = None
  detail: str = ""

  @property
  def accepted(self) -> bool:
    return self.kind == "accepted"


async def _request_json(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
  try:
    r = await client.request(method, path, **kwargs)
  except httpx.TransportError as exc:
    raise AirtableApiError(status_code=0, message=f"Airtable unreachable: {exc.__class__.__name__}") from exc
  if r.status_code >= 400:
    try:
      payload = r.json()
    except Exception:
      payload = (r.text or "")[:800]
    etype, msg = _extract_airtable_error(payload)
    raise AirtableApiError(status_code=r.status_code, message=msg, error_type=etype, body=payload)
  try:
    return r.json()
  except ValueError:
    return {}


def formula_quote(value: str) -> str:
  return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


async def airtable_list_records(
  *,
  auth: AirtableAuth,
  table: str,
  formula: str | None = None,
  max_records: int | None = None,
  page_size: int = 100,
) -> list[dict]:
  out: list[dict] = []
  offset: str | None = None
  async with auth.httpx_client() as client:
    while True:
      params: dict[str, str | int] = {"pageSize": max(1, min(100, page_size))}
      if formula:
        params["filterByFormula"] = formula
      if max_records:
        params["maxRecords"] = max_records
      if offset:
        params["offset"] = offset
      data = await _request_json(client, "GET", auth.table_path(table), params=params)
      if not isinstance(data, dict):
        return out
      out.extend([r for r in data.get("records") or [] if isinstance(r, dict)])
      offset = data.get("offset") if isinstance(data.get("offset"), str) else None
      if not offset or (max_records and len(out) >= max_records):
        return out


async def airtable_try_write(
  *,
  auth: AirtableAuth,
  table: str,
  fields: dict[str, Any],
  record_id: str | None = None,
) -> WriteOutcome:
  """
  POST (create) or PATCH (record_id given) a single record and classify the
  outcome instead of raising, so callers can walk an ordered list of shapes.
  Transport failures still raise AirtableApiError.
  """
  if record_id:
    method, body = "PATCH", {"records": [{"id": record_id, "fields": fields}]}
  else:
    method, body = "POST", {"records": [{"fields": fields}]}
  async with auth.httpx_client() as client:
    try:
      data = await _request_json(client, method, auth.table_path(table), json=body)
    except AirtableApiError as e:
      if e.status_code == 0:
        raise
      retryable = e.status_code == 422 and (e.error_type or "") in RETRYABLE_ERROR_TYPES
      return WriteOutcome(
        kind="rejected_retryable" if retryable else "rejected_fatal",
        status_code=e.status_code,
        error_type=e.error_type,
        detail=safe_text(e.body),
      )
  records = data.get("records") if isinstance(data, dict) else None
  record = records[0] if isinstance(records, list) and records and isinstance(records[0], dict) else None
  return WriteOutcome(kind="accepted", status_code=200, record=record)
