import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response

from catalog import router as catalog_router
from core import db
from core.cache import close_cache, init_cache
from core.rate_limit import configure_export_limiter
from core.settings import log_level

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    # Initialize the DB pool and the cache tiers once per process.
    await db.init_pool()
    await init_cache()
    try:
        yield
    finally:
        configure_export_limiter(None)
        await close_cache()
        await db.close_pool()


app = FastAPI(lifespan=lifespan)

app.include_router(catalog_router.router, tags=["products"])


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/live")
def health_live() -> dict:
    return {"status": "ok"}


@app.get("/health/ready")
async def health_ready(response: Response) -> dict:
    if not db.is_ready():
        response.status_code = 503
        return {"status": "unavailable", "database": "not_initialized"}
    try:
        await db.fetch_val("SELECT 1")
    except Exception as exc:
        logging.getLogger(__name__).warning("health_ready_db_failed error=%s", exc)
        response.status_code = 503
        return {"status": "unavailable", "database": "error"}
    return {"status": "ok", "database": "ok"}


@app.get("/")
def root() -> dict:
    return {"message": "catalog export api"}
