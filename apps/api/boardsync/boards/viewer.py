from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from time import monotonic
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from boardsync.config import settings
from boardsync.mural.client import (
  MuralApiError,
  MuralAuth,
  list_items,
  mural_create_viewer_link,
  mural_get_board,
  mural_list_board_links,
)

logger = logging.getLogger(__name__)

_VIEWER_PATHS = (
  re.compile(r"^/t/[^/]+/m/[^/]+", re.I),
  re.compile(r"^/invitation/mural/[a-z0-9.-]+", re.I),
  re.compile(r"^/viewer/", re.I),
  re.compile(r"^/share/[^/]+/mural/[a-z0-9.-]+", re.I),
)

# Inspected first at every node, in this order.
CANDIDATE_KEYS = (
  "viewerUrl",
  "viewerURL",
  "viewLink",
  "viewURL",
  "openUrl",
  "openURL",
  "_canvasLink",
  "url",
  "href",
  "link",
  "value",
  "links",
)
_LINK_SUBKEYS = ("viewer", "open", "share", "public")
_VIEWER_TYPE = re.compile(r"viewer|view|open|public", re.I)


def looks_like_viewer_url(value: Any, *, host: str | None = None) -> bool:
  if not isinstance(value, str) or not value.strip():
    return False
  try:
    u = urlparse(value.strip())
  except ValueError:
    return False
  if u.scheme not in ("http", "https"):
    return False
  if (u.hostname or "").lower() != (host or settings.mural_viewer_host).lower():
    return False
  return any(p.search(u.path or "") for p in _VIEWER_PATHS)


def extract_viewer_url(payload: Any, *, host: str | None = None) -> str | None:
  """
  Breadth-first search for a viewer URL anywhere in a decoded JSON tree.

  Containers are tracked by identity, so self-referencing structures terminate.
  """
  if payload is None:
    return None
  seen: set[int] = set()
  queue: deque[Any] = deque([payload])
  while queue:
    node = queue.popleft()
    if isinstance(node, str):
      if looks_like_viewer_url(node, host=host):
        return node.strip()
      continue
    if not isinstance(node, (dict, list)):
      continue
    if id(node) in seen:
      continue
    seen.add(id(node))

    if isinstance(node, list):
      queue.extend(node)
      continue

    picked: list[Any] = [node[k] for k in CANDIDATE_KEYS if node.get(k) is not None]
    links = node.get("links")
    if isinstance(links, dict):
      picked.extend(links[k] for k in _LINK_SUBKEYS if links.get(k) is not None)
    for c in picked:
      if isinstance(c, str) and looks_like_viewer_url(c, host=host):
        return c.strip()
    queue.extend(c for c in picked if isinstance(c, (dict, list)))
    picked_ids = {id(c) for c in picked}
    queue.extend(v for v in node.values() if id(v) not in picked_ids)
  return None


def _best_link(links: list[dict], *, host: str | None = None) -> str | None:
  # viewer/open/public typed links win over any other usable link
  for link in links:
    if _VIEWER_TYPE.search(str(link.get("type") or "")) and looks_like_viewer_url(link.get("url"), host=host):
      return str(link["url"]).strip()
  for link in links:
    if looks_like_viewer_url(link.get("url"), host=host):
      return str(link["url"]).strip()
  return None


class ViewerLinkProber:
  """Finds a shareable viewer URL for a freshly created board."""

  def __init__(self, *, host: str | None = None) -> None:
    self.host = host

  async def probe(self, board_id: str, auth: MuralAuth) -> str | None:
    try:
      url = extract_viewer_url(await mural_get_board(auth=auth, board_id=board_id), host=self.host)
      if url:
        return url
    except MuralApiError as e:
      logger.debug("viewer.probe get_board failed board=%s status=%s", board_id, e.status_code)

    try:
      url = _best_link(await mural_list_board_links(auth=auth, board_id=board_id), host=self.host)
      if url:
        return url
    except MuralApiError as e:
      logger.debug("viewer.probe list_links failed board=%s status=%s", board_id, e.status_code)

    try:
      created = await mural_create_viewer_link(auth=auth, board_id=board_id)
      url = _best_link(list_items(created), host=self.host) or extract_viewer_url(created, host=self.host)
      if url:
        return url
    except MuralApiError as e:
      logger.debug("viewer.probe create_link failed board=%s status=%s", board_id, e.status_code)

    try:
      return extract_viewer_url(await mural_get_board(auth=auth, board_id=board_id), host=self.host)
    except MuralApiError as e:
      logger.debug("viewer.probe refetch failed board=%s status=%s", board_id, e.status_code)
    return None


async def poll_viewer_url(
  prober: ViewerLinkProber,
  board_id: str,
  auth: MuralAuth,
  *,
  deadline_s: float | None = None,
  interval_s: float | None = None,
  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
  clock: Callable[[], float] = monotonic,
) -> tuple[str | None, int]:
  deadline_s = settings.viewer_probe_deadline_seconds if deadline_s is None else deadline_s
  interval_s = settings.viewer_probe_interval_seconds if interval_s is None else interval_s
  ends_at = clock() + max(0.0, deadline_s)
  attempts = 0
  while True:
    attempts += 1
    url = await prober.probe(board_id, auth)
    if url:
      return url, attempts
    if clock() + interval_s >= ends_at:
      logger.info("viewer.poll gave up board=%s attempts=%s", board_id, attempts)
      return None, attempts
    await sleep(interval_s)
