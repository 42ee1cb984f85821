"""
Error taxonomy for board resolution, provisioning and journal sync.

Every error carries a machine-readable `reason`, an optional `step` (the
provisioning/sync step that failed) and `details` for diagnostics. The HTTP
layer renders them as `{"ok": false, "error": reason, "step": ..., ...}`.
"""

from __future__ import annotations

from typing import Any


class BoardSyncError(RuntimeError):
  reason = "board_sync_error"
  status_code = 500

  def __init__(self, message: str | None = None, *, step: str | None = None, details: dict[str, Any] | None = None) -> None:
    self.message = message or self.reason
    super().__init__(self.message)
    self.step = step
    self.details = details or {}

  def at_step(self, step: str) -> BoardSyncError:
    if not self.step:
      self.step = step
    return self

  def to_payload(self) -> dict[str, Any]:
    return {
      "ok": False,
      "error": self.reason,
      "step": self.step,
      "message": self.message,
      "upstream": self.details or None,
    }


class NotAuthenticated(BoardSyncError):
  reason = "not_authenticated"
  status_code = 401


class NotInAllowedWorkspace(BoardSyncError):
  reason = "not_in_allowed_workspace"
  status_code = 403


class UpstreamUnavailable(BoardSyncError):
  reason = "upstream_unavailable"
  status_code = 502


class SchemaMismatch(BoardSyncError):
  reason = "schema_mismatch"
  status_code = 500


class NotFound(BoardSyncError):
  reason = "not_found"
  status_code = 404


class UnsupportedCategory(BoardSyncError):
  reason = "unsupported_category"
  status_code = 400


class MissingRequiredField(BoardSyncError):
  reason = "missing_required_field"
  status_code = 400
