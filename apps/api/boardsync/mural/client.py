from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx


def normalize_base_url(base_url: str) -> str:
  b = (base_url or "").strip().rstrip("/")
  if not b:
    b = "https://app.mural.co/api/public/v1"
  if not (b.startswith("http://") or b.startswith("https://")):
    b = "https://" + b
  return b


class MuralApiError(RuntimeError):
  def __init__(self, *, status_code: int, message: str, body: Any = None, endpoint: str | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.message = message
    self.body = body
    self.endpoint = endpoint

  @property
  def unavailable(self) -> bool:
    # 0 = transport failure (timeout, DNS, reset)
    return self.status_code == 0 or self.status_code >= 500

  @property
  def gone(self) -> bool:
    return self.status_code in (404, 410)

  def details(self) -> dict[str, Any]:
    body = self.body
    if isinstance(body, str):
      body = body[:500]
    return {"statusCode": self.status_code, "endpoint": self.endpoint, "body": body}


def _extract_mural_error(payload: Any, status_code: int) -> str:
  if isinstance(payload, dict):
    for k in ("message", "error_description", "error", "code"):
      v = payload.get(k)
      if isinstance(v, str) and v.strip():
        return v.strip()[:300]
  if isinstance(payload, str) and payload.strip():
    return payload.strip()[:300]
  return f"HTTP {status_code}"


async def _request_json(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
  try:
    r = await client.request(method, path, **kwargs)
  except httpx.TransportError as exc:
    raise MuralApiError(status_code=0, message=f"Mural unreachable: {exc.__class__.__name__}", endpoint=path) from exc
  if r.status_code >= 400:
    try:
      payload = r.json()
    except Exception:
      payload = (r.text or "")[:800]
    raise MuralApiError(
      status_code=r.status_code,
      message=_extract_mural_error(payload, r.status_code),
      body=payload,
      endpoint=path,
    )
  if r.status_code == 204 or not r.content:
    return {}
  try:
    return r.json()
  except ValueError:
    return {}


def unwrap_value(payload: Any) -> Any:
  """Mural answers either bare or inside a `{"value": ...}` envelope."""
  if isinstance(payload, dict) and isinstance(payload.get("value"), dict):
    return payload["value"]
  return payload


def list_items(payload: Any) -> list[dict]:
  if isinstance(payload, dict):
    for k in ("items", "value", "data"):
      if isinstance(payload.get(k), list):
        return [x for x in payload[k] if isinstance(x, dict)]
    return []
  if isinstance(payload, list):
    return [x for x in payload if isinstance(x, dict)]
  return []


def pick_id(payload: Any) -> str | None:
  for node in (payload, unwrap_value(payload)):
    if not isinstance(node, dict):
      continue
    for k in ("id", "widgetId", "muralId"):
      v = node.get(k)
      if isinstance(v, (str, int)) and str(v).strip():
        return str(v).strip()
  return None


@dataclass
class MuralOAuthApp:
  client_id: str
  client_secret: str
  redirect_uri: str
  base_url: str = "https://app.mural.co/api/public/v1"
  scopes: list[str] = field(default_factory=list)
  timeout: float = 15.0
  transport: httpx.AsyncBaseTransport | None = None

  def httpx_client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(
      base_url=normalize_base_url(self.base_url),
      headers={"Accept": "application/json"},
      timeout=self.timeout,
      transport=self.transport,
    )


@dataclass
class MuralAuth:
  token: str
  base_url: str = "https://app.mural.co/api/public/v1"
  timeout: float = 15.0
  transport: httpx.AsyncBaseTransport | None = None

  def httpx_client(self) -> httpx.AsyncClient:
    headers = {
      "Accept": "application/json",
      "Content-Type": "application/json; charset=utf-8",
      "Authorization": f"Bearer {self.token}",
    }
    return httpx.AsyncClient(
      base_url=normalize_base_url(self.base_url),
      headers=headers,
      timeout=self.timeout,
      transport=self.transport,
    )


def build_auth_url(*, app: MuralOAuthApp, state: str) -> str:
  params = {
    "response_type": "code",
    "client_id": app.client_id,
    "redirect_uri": app.redirect_uri,
    "scope": " ".join(app.scopes),
    "state": state,
  }
  return f"{normalize_base_url(app.base_url)}/authorization/oauth2/authorize?{urlencode(params)}"


async def _token_grant(app: MuralOAuthApp, form: dict[str, str]) -> dict:
  form = {**form, "client_id": app.client_id, "client_secret": app.client_secret}
  async with app.httpx_client() as client:
    data = await _request_json(client, "POST", "/authorization/oauth2/token", data=form)
  if not isinstance(data, dict) or not data.get("access_token"):
    raise MuralApiError(status_code=502, message="Token endpoint returned no access_token", body=data)
  return data


async def exchange_auth_code(*, app: MuralOAuthApp, code: str) -> dict:
  return await _token_grant(app, {"grant_type": "authorization_code", "code": code, "redirect_uri": app.redirect_uri})


async def refresh_access_token(*, app: MuralOAuthApp, refresh_token: str) -> dict:
  return await _token_grant(app, {"grant_type": "refresh_token", "refresh_token": refresh_token})


async def mural_get_me(*, auth: MuralAuth) -> dict:
  async with auth.httpx_client() as client:
    data = unwrap_value(await _request_json(client, "GET", "/users/me"))
  return data if isinstance(data, dict) else {}


async def mural_get_workspace(*, auth: MuralAuth, workspace_id: str) -> dict:
  async with auth.httpx_client() as client:
    data = unwrap_value(await _request_json(client, "GET", f"/workspaces/{workspace_id}"))
  return data if isinstance(data, dict) else {}


async def mural_list_workspaces(*, auth: MuralAuth) -> list[dict]:
  async with auth.httpx_client() as client:
    return list_items(await _request_json(client, "GET", "/workspaces"))


async def mural_list_rooms(*, auth: MuralAuth, workspace_id: str) -> list[dict]:
  async with auth.httpx_client() as client:
    return list_items(await _request_json(client, "GET", f"/workspaces/{workspace_id}/rooms"))


async def mural_create_room(*, auth: MuralAuth, workspace_id: str, name: str, visibility: str = "private") -> dict:
  async with auth.httpx_client() as client:
    try:
      created = await _request_json(
        client, "POST", "/rooms", json={"name": name, "workspaceId": workspace_id, "visibility": visibility}
      )
    except MuralApiError as e:
      # Older tenants only expose the workspace-scoped endpoint.
      if e.status_code != 404:
        raise
      created = await _request_json(
        client, "POST", f"/workspaces/{workspace_id}/rooms", json={"name": name, "type": visibility}
      )
  room = unwrap_value(created)
  return room if isinstance(room, dict) else {}


async def mural_list_folders(*, auth: MuralAuth, room_id: str) -> list[dict]:
  async with auth.httpx_client() as client:
    return list_items(await _request_json(client, "GET", f"/rooms/{room_id}/folders"))


async def mural_create_folder(*, auth: MuralAuth, room_id: str, name: str) -> dict:
  async with auth.httpx_client() as client:
    created = unwrap_value(await _request_json(client, "POST", f"/rooms/{room_id}/folders", json={"name": name}))
  return created if isinstance(created, dict) else {}


async def mural_duplicate_board(
  *,
  auth: MuralAuth,
  template_id: str,
  title: str,
  room_id: str,
  folder_id: str | None = None,
) -> dict:
  body: dict[str, Any] = {"title": title, "roomId": room_id}
  if folder_id:
    body["folderId"] = folder_id
  async with auth.httpx_client() as client:
    created = await _request_json(client, "POST", f"/murals/{template_id}/duplicate", json=body)
  return created if isinstance(created, dict) else {}


async def mural_create_board(*, auth: MuralAuth, title: str, room_id: str, folder_id: str | None = None) -> dict:
  async with auth.httpx_client() as client:
    try:
      created = await _request_json(
        client,
        "POST",
        "/murals",
        json={"title": title, "roomId": room_id, "folderId": folder_id, "backgroundColor": "#FFFFFF"},
      )
    except MuralApiError as e:
      if e.status_code != 404:
        raise
      legacy: dict[str, Any] = {"title": title}
      if folder_id:
        legacy["folderId"] = folder_id
      created = await _request_json(client, "POST", f"/rooms/{room_id}/murals", json=legacy)
  return created if isinstance(created, dict) else {}


async def mural_get_board(*, auth: MuralAuth, board_id: str) -> Any:
  # Raw payload: callers deep-search it, so the envelope is kept.
  async with auth.httpx_client() as client:
    return await _request_json(client, "GET", f"/murals/{board_id}")


async def mural_list_board_links(*, auth: MuralAuth, board_id: str) -> list[dict]:
  async with auth.httpx_client() as client:
    return list_items(await _request_json(client, "GET", f"/murals/{board_id}/links"))


async def mural_create_viewer_link(*, auth: MuralAuth, board_id: str) -> Any:
  async with auth.httpx_client() as client:
    return await _request_json(client, "POST", f"/murals/{board_id}/links", json={"type": "viewer"})


async def head_status(url: str, *, timeout: float = 15.0, transport: httpx.AsyncBaseTransport | None = None) -> int | None:
  try:
    async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
      r = await client.head(url)
  except httpx.HTTPError:
    return None
  return r.status_code


async def mural_list_widgets(*, auth: MuralAuth, board_id: str) -> list[dict]:
  out: list[dict] = []
  cursor: str | None = None
  async with auth.httpx_client() as client:
    while True:
      params = {"next": cursor} if cursor else None
      try:
        data = await _request_json(client, "GET", f"/murals/{board_id}/widgets", params=params)
      except MuralApiError as e:
        if e.status_code == 404:
          return out
        raise
      out.extend(list_items(data))
      nxt = data.get("next") if isinstance(data, dict) else None
      if not isinstance(nxt, str) or not nxt or nxt == cursor:
        return out
      cursor = nxt


async def mural_create_sticky(
  *,
  auth: MuralAuth,
  board_id: str,
  text: str,
  x: int,
  y: int,
  width: int,
  height: int,
) -> str | None:
  body = {"text": text, "x": x, "y": y, "width": width, "height": height, "shape": "rectangle"}
  async with auth.httpx_client() as client:
    created = await _request_json(client, "POST", f"/murals/{board_id}/widgets/sticky-note", json=body)
  if isinstance(created, dict) and isinstance(created.get("value"), list):
    created = created["value"]
  if isinstance(created, list) and created:
    created = created[0]
  return pick_id(created)


async def mural_update_widget(
  *,
  auth: MuralAuth,
  board_id: str,
  widget_id: str,
  kind: str = "sticky-note",
  patch: dict[str, Any],
) -> dict:
  if not patch:
    return {}
  async with auth.httpx_client() as client:
    out = await _request_json(client, "PATCH", f"/murals/{board_id}/widgets/{kind}/{widget_id}", json=patch)
  return out if isinstance(out, dict) else {}


async def mural_list_tags(*, auth: MuralAuth, board_id: str) -> list[dict]:
  async with auth.httpx_client() as client:
    return list_items(await _request_json(client, "GET", f"/murals/{board_id}/tags"))


async def mural_create_tag(*, auth: MuralAuth, board_id: str, name: str, color: str) -> str | None:
  async with auth.httpx_client() as client:
    created = await _request_json(client, "POST", f"/murals/{board_id}/tags", json={"text": name, "color": color})
  return pick_id(created)
