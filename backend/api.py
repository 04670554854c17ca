import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.datastructures import UploadFile

import derived_metrics
import mutation_gateway
import query_gateway
from config import Settings, log
from errors import ConflictingIngestion, MetricsError, NoFileUploaded, ValidationError
from ingest import Ingestor
from rate_limit import RateLimiter
from storage import Database


# -----------------------------------------------------
# Request bodies
# -----------------------------------------------------

class QueryRequest(BaseModel):
    query: Optional[str] = None
    page: int = query_gateway.DEFAULT_PAGE
    limit: int = query_gateway.DEFAULT_LIMIT


class UpdateRequest(BaseModel):
    filter: Dict[str, Any] = Field(default_factory=dict)
    updates: Dict[str, Any] = Field(default_factory=dict)


class CleanupRequest(BaseModel):
    query: Optional[str] = None


# -----------------------------------------------------
# App & DB helpers
# -----------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database once at startup and close it on shutdown."""
    settings: Settings = app.state.settings
    os.makedirs(settings.upload_dir, exist_ok=True)
    db = Database(settings.db_path).open()
    app.state.db = db
    app.state.ingestor = Ingestor(db, settings)
    log(f"Store metrics API ready. Database: {settings.db_path}")
    try:
        yield
    finally:
        db.close()


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_ingestor(request: Request) -> Ingestor:
    return request.app.state.ingestor


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(title="Store Metrics API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.started_at = time.monotonic()

    limiter = RateLimiter(settings.rate_limit_max, settings.rate_limit_window)
    app.state.limiter = limiter

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        key = request.client.host if request.client else "unknown"
        if not limiter.hit(key):
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests, please try again later."},
                headers={"Retry-After": str(limiter.retry_after(key))},
            )
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MetricsError)
    async def metrics_error_handler(request: Request, exc: MetricsError):
        level = "ERROR" if exc.status_code >= 500 else "WARN"
        log(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.error}", level=level)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    register_routes(app)
    return app


# -----------------------------------------------------
# Routes
# -----------------------------------------------------

def register_routes(app: FastAPI):

    @app.get("/favicon.ico", include_in_schema=False)
    async def favicon():
        """Avoid noisy 404s for /favicon.ico in the browser"""
        return Response(status_code=204)

    @app.get("/health")
    def health(request: Request):
        return {
            "uptime": time.monotonic() - request.app.state.started_at,
            "message": "OK",
            "timestamp": int(time.time() * 1000),
        }

    @app.post("/upload")
    async def upload(request: Request, ingestor: Ingestor = Depends(get_ingestor)):
        """
        Load a CSV into store_metrics, replacing whatever was there.

        Accepts a multipart form with a `file` field, or a JSON body
        {"url": "https://..."} pointing at a CSV to download.
        """
        if ingestor.busy:
            raise ConflictingIngestion()

        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                body = await request.json()
            except ValueError as e:
                raise ValidationError("Invalid JSON body", details=str(e)) from e
            url = body.get("url") if isinstance(body, dict) else None
            if not url:
                raise NoFileUploaded()
            result = await run_in_threadpool(ingestor.ingest_url, url)
            return result.to_response()

        if not content_type.startswith("multipart/form-data"):
            raise NoFileUploaded()

        form = await request.form()
        try:
            upload_file = form.get("file")
            if not isinstance(upload_file, UploadFile):
                raise NoFileUploaded()
            result = await run_in_threadpool(
                ingestor.ingest_upload, upload_file.file, upload_file.filename
            )
        finally:
            await form.close()
        return result.to_response()

    @app.post("/query")
    def run_query(body: QueryRequest, db: Database = Depends(get_db)):
        """
        Paginated ad-hoc query. `total` is the full table size.
        Trusted callers only: the query text is executed as given.
        """
        return query_gateway.query(db, body.query, body.page, body.limit)

    @app.post("/update")
    def update_rows(body: UpdateRequest, db: Database = Depends(get_db)):
        affected = mutation_gateway.update(db, body.filter, body.updates)
        return {"affectedRows": affected}

    @app.get("/download")
    def download(
        query: Optional[str] = Query(None, description="SQL to export (defaults to the whole table)"),
        db: Database = Depends(get_db),
    ):
        chunks = query_gateway.export_csv(db, query)
        return StreamingResponse(
            chunks,
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=data.csv"},
        )

    @app.post("/cleanup")
    def cleanup(body: CleanupRequest, db: Database = Depends(get_db)):
        affected = mutation_gateway.cleanup(db, body.query)
        return {"affectedRows": affected}

    @app.get("/schema")
    def schema(db: Database = Depends(get_db)) -> List[Dict[str, Any]]:
        return query_gateway.table_schema(db)

    @app.get("/count")
    def count(
        filter_: Optional[str] = Query(None, alias="filter", description='JSON object, e.g. {"store_number": "5"}'),
        db: Database = Depends(get_db),
    ):
        conditions = query_gateway.parse_filter(filter_)
        return {"count": query_gateway.count(db, conditions)}

    @app.get("/store-metrics")
    def store_metrics(db: Database = Depends(get_db)):
        """
        Derived dashboard metrics (weeks of supply, L4W, pipeline...),
        one row per item/store, at most 1000 rows.
        """
        return derived_metrics.store_metrics(db)

    @app.get("/db-status")
    def db_status(db: Database = Depends(get_db)):
        table_exists = db.table_exists()
        row_count = db.row_count() if table_exists else 0
        size = db.size_bytes()
        return {
            "initialized": db.is_open,
            "tableExists": table_exists,
            "rowCount": row_count,
            "dbSizeBytes": size,
            "dbSizeMB": round(size / (1024 * 1024), 2),
        }

    @app.post("/db-cleanup")
    def db_cleanup(db: Database = Depends(get_db)):
        mutation_gateway.drop_table(db)
        return {
            "message": "Database cleaned successfully",
            "status": "success",
        }


app = create_app()
