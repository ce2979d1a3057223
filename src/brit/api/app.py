from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from brit.api.errors import ApiError, api_error_from_exchange
from brit.api.schemas import HealthResponse
from brit.api.security import RequestSizeLimitMiddleware
from brit.api.structured_logging import RequestLogMiddleware
from brit.config import MatcherConfig, load_matcher_config
from brit.errors import ExchangeError
from brit.matcher.pool import InMemoryAddressPool, SqliteAddressPool, load_pool_file, seed_pool
from brit.matcher.responder import MatcherResponder
from brit.storage.sqlite_db import SqliteDB
from brit.transport import CONTENT_TYPE
from brit.wire.messages import SUPPORTED_VERSION


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_pool(cfg: MatcherConfig, *, clock: Callable[[], int] = _now_ms):
    """SQLite pool when BRIT_MATCHER_DB_PATH is set, else in-memory; seeded from the YAML pool file."""
    if cfg.db_path:
        pool = SqliteAddressPool(
            db=SqliteDB(path=cfg.db_path),
            cohort_size=cfg.cohort_size,
            rotation_ms=cfg.rotation_ms,
            clock=clock,
        )
    else:
        pool = InMemoryAddressPool(cohort_size=cfg.cohort_size, rotation_ms=cfg.rotation_ms, clock=clock)

    if cfg.pool_file:
        seed_pool(pool, load_pool_file(cfg.pool_file))
    return pool


def create_app(
    cfg: Optional[MatcherConfig] = None,
    *,
    pool=None,
    clock: Callable[[], int] = _now_ms,
) -> FastAPI:
    """Create the Matcher host.

    cfg/pool are injectable so tests can run without env or disk.
    """
    cfg = cfg or load_matcher_config()
    pool = pool if pool is not None else build_pool(cfg, clock=clock)
    responder = MatcherResponder(private_key=cfg.private_key, pool=pool, clock=clock)

    mode = os.environ.get("BRIT_MODE", "prod").strip().lower()
    if mode == "prod":
        app = FastAPI(title="BRIT Matcher", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="BRIT Matcher")

    app.state.cfg = cfg
    app.state.pool = pool
    app.state.responder = responder

    app.add_middleware(
        RequestSizeLimitMiddleware,
        max_bytes=cfg.max_request_bytes,
        limited_paths=(cfg.endpoint_path,),
    )
    app.add_middleware(RequestLogMiddleware)

    @app.exception_handler(ApiError)
    async def _api_error(_request: Request, exc: ApiError) -> JSONResponse:
        return exc.to_response()

    @app.post(cfg.endpoint_path)
    async def exchange(request: Request) -> Response:
        body = await request.body()
        if not body:
            raise ApiError.bad_request("empty_body", "request body is empty")
        try:
            sealed = await run_in_threadpool(responder.handle_request, body)
        except ExchangeError as e:
            raise api_error_from_exchange(e) from e
        return Response(content=sealed, media_type=CONTENT_TYPE)

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        cohort = await run_in_threadpool(pool.current_cohort)
        return HealthResponse(
            protocol_version=SUPPORTED_VERSION,
            cohort_size=len(cohort),
            endpoint=cfg.endpoint_path,
        )

    return app
