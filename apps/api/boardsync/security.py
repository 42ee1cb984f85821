from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from boardsync.config import settings

OAUTH_STATE_TTL_SECONDS = 600


class TokenDecryptError(RuntimeError):
  pass


class OAuthStateError(ValueError):
  pass


def _fernet() -> Fernet:
  key = settings.fernet_key
  # accept raw bytes/base64 for ergonomics
  try:
    base64.urlsafe_b64decode(key.encode("utf-8"))
    return Fernet(key.encode("utf-8"))
  except Exception:
    b = base64.urlsafe_b64encode(key.encode("utf-8").ljust(32, b"\0")[:32])
    return Fernet(b)


def encrypt_secret(value: str) -> str:
  return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(value: str) -> str:
  try:
    return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")
  except InvalidToken as exc:
    raise TokenDecryptError(
      "Stored Mural tokens cannot be decrypted with the current key; reconnect Mural to continue."
    ) from exc


def _b64(data: bytes) -> str:
  return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _unb64(text: str) -> bytes:
  pad = "=" * ((4 - len(text) % 4) % 4)
  return base64.urlsafe_b64decode((text + pad).encode("utf-8"))


def _state_sig(body: str) -> str:
  key = (settings.app_secret or "").encode("utf-8")
  return _b64(hmac.new(key, body.encode("utf-8"), hashlib.sha256).digest())


def encode_oauth_state(payload: dict[str, Any], *, now: float | None = None) -> str:
  data = dict(payload)
  data["ts"] = int(now if now is not None else time.time())
  body = _b64(json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8"))
  return f"{body}.{_state_sig(body)}"


def decode_oauth_state(state: str, *, now: float | None = None) -> dict[str, Any]:
  body, _, sig = (state or "").partition(".")
  if not body or not sig:
    raise OAuthStateError("malformed state")
  if not hmac.compare_digest(sig, _state_sig(body)):
    raise OAuthStateError("state signature mismatch")
  try:
    data = json.loads(_unb64(body))
  except (ValueError, UnicodeDecodeError) as exc:
    raise OAuthStateError("state payload unreadable") from exc
  if not isinstance(data, dict):
    raise OAuthStateError("state payload unreadable")
  ts = int(now if now is not None else time.time())
  if ts - int(data.get("ts") or 0) > OAUTH_STATE_TTL_SECONDS:
    raise OAuthStateError("state expired")
  return data
