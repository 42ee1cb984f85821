from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from boardsync.boards.cache import ResolutionCache
from boardsync.config import settings
from boardsync.errors import BoardSyncError
from boardsync.routers.mural import router as mural_router

logging.basicConfig(
  level=getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO),
  format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Boardsync API", version=settings.app_version)
app.state.resolution_cache = ResolutionCache(ttl_seconds=settings.resolve_cache_ttl_seconds)


@app.exception_handler(BoardSyncError)
async def _board_sync_error_handler(_, exc: BoardSyncError) -> JSONResponse:
  if exc.status_code >= 500:
    logger.error("request failed step=%s reason=%s: %s", exc.step, exc.reason, exc.message)
  return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_origin_regex=settings.cors_origin_regex,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_host_list())

app.include_router(mural_router)


@app.middleware("http")
async def _security_headers_middleware(request, call_next):
  response = await call_next(request)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
  return response


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


def _is_test_db() -> bool:
  try:
    db_name = settings.database_url.rsplit("/", 1)[-1]
    return "test" in db_name
  except Exception:
    return False


@app.on_event("startup")
async def _startup() -> None:
  if _is_test_db():
    return
  if not settings.app_secret or settings.app_secret.strip().lower() in {"dev-secret-change-me", "replace_with_strong_random_secret"}:
    raise RuntimeError("APP_SECRET is required and must not be a placeholder")
  if not settings.fernet_key or settings.fernet_key.strip() in {"AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=", "REPLACE_WITH_FERNET_KEY"}:
    raise RuntimeError("FERNET_KEY is required and must not be a placeholder")
  if settings.fallback_board_id:
    logger.warning("FALLBACK_BOARD_ID is set; this global board fallback is deprecated")
  if not settings.airtable_configured():
    logger.warning("Airtable is not configured; board mappings cannot be registered")
