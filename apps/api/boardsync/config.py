from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://boardsync:boardsync@db:5432/boardsync"
  app_secret: str = "dev-secret-change-me"
  fernet_key: str = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA="
  app_version: str = "v2026-10-18+r1"
  build_sha: str = "dev"
  app_base_url: str = "http://localhost:3000"
  log_level: str = "INFO"

  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
  cors_origin_regex: str = r"^http://(localhost|127\.0\.0\.1):3000$"
  trusted_hosts: str = "localhost,127.0.0.1,api,test"

  mural_client_id: str | None = None
  mural_client_secret: str | None = None
  mural_redirect_uri: str | None = None
  mural_api_base: str = "https://app.mural.co/api/public/v1"
  mural_scopes: str = "identity:read workspaces:read rooms:read rooms:write murals:read murals:write"
  mural_company_id: str | None = None
  mural_company_name_pattern: str = r"home\s*office"
  mural_template_board_id: str = "76da04f30edfebd1ac5b595ad2953629b41c1c7d"
  mural_board_title_prefix: str = "Reflexive Journal"
  mural_room_name_template: str = "{username} (Private)"
  mural_viewer_host: str = "app.mural.co"
  mural_tag_color: str = "Blueberry"
  mural_timeout_seconds: float = 15.0

  airtable_base_id: str | None = None
  airtable_api_key: str | None = None
  airtable_api_base: str = "https://api.airtable.com/v0"
  airtable_boards_table: str = "Mural Boards"
  airtable_projects_table: str = "Projects"
  airtable_timeout_seconds: float = 15.0

  kv_backend: str = "sql"  # sql | redis | memory
  redis_url: str | None = "redis://redis:6379/0"

  resolve_cache_ttl_seconds: float = 60.0
  validate_board_liveness: bool = True
  # Deprecated: single global board id kept for the migration period only.
  fallback_board_id: str | None = None

  viewer_probe_deadline_seconds: float = 9.0
  viewer_probe_interval_seconds: float = 0.6

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

  def trusted_host_list(self) -> list[str]:
    return [h.strip() for h in self.trusted_hosts.split(",") if h.strip()]

  def mural_scope_list(self) -> list[str]:
    return [s for s in self.mural_scopes.split() if s]

  def airtable_configured(self) -> bool:
    return bool((self.airtable_base_id or "").strip() and (self.airtable_api_key or "").strip())


settings = Settings()
