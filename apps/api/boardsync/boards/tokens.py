from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from boardsync.boards.types import OAuthTokenRecord
from boardsync.errors import NotAuthenticated
from boardsync.kv import KeyValueStore
from boardsync.mural.client import MuralApiError, MuralOAuthApp, exchange_auth_code, refresh_access_token
from boardsync.security import TokenDecryptError, decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)

T = TypeVar("T")


def token_key(uid: str) -> str:
  return f"mural:{uid}:tokens"


def _record_from_grant(data: dict[str, Any], *, now: float | None = None) -> OAuthTokenRecord:
  record = OAuthTokenRecord.from_dict(data)
  expires_in = data.get("expires_in")
  if isinstance(expires_in, (int, float)) and expires_in > 0:
    record.expires_at = (now if now is not None else time.time()) + float(expires_in)
  return record


class TokenStore:
  def __init__(self, kv: KeyValueStore, app: MuralOAuthApp) -> None:
    self.kv = kv
    self.app = app

  async def load(self, uid: str) -> OAuthTokenRecord | None:
    raw = await self.kv.get(token_key(uid))
    if not raw:
      return None
    try:
      data = json.loads(decrypt_secret(raw))
    except TokenDecryptError:
      logger.warning("mural.tokens undecryptable for uid=%s; treating as absent", uid)
      return None
    except ValueError:
      logger.warning("mural.tokens unreadable for uid=%s; treating as absent", uid)
      return None
    if not isinstance(data, dict) or not data.get("access_token"):
      return None
    return OAuthTokenRecord.from_dict(data)

  async def save(self, uid: str, record: OAuthTokenRecord) -> None:
    await self.kv.put(token_key(uid), encrypt_secret(json.dumps(record.to_dict())))

  async def delete(self, uid: str) -> None:
    await self.kv.delete(token_key(uid))

  async def exchange_code(self, uid: str, code: str) -> OAuthTokenRecord:
    data = await exchange_auth_code(app=self.app, code=code)
    record = _record_from_grant(data)
    await self.save(uid, record)
    logger.info("mural.tokens stored uid=%s", uid)
    return record

  async def refresh(self, uid: str, prior: OAuthTokenRecord) -> OAuthTokenRecord:
    if not prior.refresh_token:
      raise NotAuthenticated("Mural session expired and no refresh token is stored")
    try:
      data = await refresh_access_token(app=self.app, refresh_token=prior.refresh_token)
    except MuralApiError as e:
      logger.warning("mural.tokens refresh failed uid=%s status=%s", uid, e.status_code)
      raise NotAuthenticated("Mural token refresh failed", details=e.details()) from e
    # Refresh responses may omit refresh_token; keep what we had.
    merged = {**prior.to_dict(), **_record_from_grant(data).to_dict()}
    record = OAuthTokenRecord.from_dict(merged)
    if not isinstance(data.get("expires_in"), (int, float)):
      # the prior expiry belongs to the old access token
      record.expires_at = None
    await self.save(uid, record)
    logger.info("mural.tokens refreshed uid=%s", uid)
    return record

  async def with_valid_access(self, uid: str, fn: Callable[[str], Awaitable[T]]) -> T:
    """
    Run `fn(access_token)`; on a 401 refresh once and retry once.

    No proactive refresh: `expires_at` is advisory only.
    """
    record = await self.load(uid)
    if record is None:
      raise NotAuthenticated("Mural is not connected for this user")
    try:
      return await fn(record.access_token)
    except MuralApiError as e:
      if e.status_code != 401:
        raise
    record = await self.refresh(uid, record)
    try:
      return await fn(record.access_token)
    except MuralApiError as e:
      if e.status_code == 401:
        raise NotAuthenticated("Mural rejected the refreshed token", details=e.details()) from e
      raise
