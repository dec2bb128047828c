import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.preview_routes import close_preview_registry
from api.preview_routes import router as preview_router
from api.sandbox_routes import router as sandbox_router
from db import close_db, get_db_settings, get_pool_status, health_check, init_db
from redis_client import close_redis
from sandbox_client import setup_logging
from services.sandbox_lifecycle import close_sandbox_lifecycle

setup_logging()
logger = logging.getLogger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan handler for application lifecycle management.
    Initializes the database on startup; stops previews and closes
    connections on shutdown.
    """
    # ==================== STARTUP ====================
    logger.info("[APP] 🚀 Starting application...")

    try:
        db_settings = get_db_settings()
        await init_db(create_tables=db_settings.is_sqlite())
        logger.info("✅ Database initialized")

        logger.info("[APP] ✅ All services ready!")

    except Exception as e:
        logger.error(f"[APP] ❌ Startup failed: {e}", exc_info=True)
        raise

    yield

    # ==================== SHUTDOWN ====================
    logger.info("[APP] 🛑 Shutting down...")

    await close_preview_registry()
    logger.info("✅ Preview monitors stopped")

    await close_sandbox_lifecycle()
    await close_db()
    close_redis()
    logger.info("✅ Connections closed")


app = FastAPI(
    title="Preview Sandbox API",
    description="Sandbox lifecycle and preview health reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure based on your frontend URL in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include sandbox lifecycle routes
app.include_router(sandbox_router)

# Include preview session routes
app.include_router(preview_router)


@app.get("/health")
async def health():
    db_ok = await health_check()
    return {
        "status": "ok" if db_ok else "degraded",
        "database": db_ok,
        "pool": await get_pool_status(),
    }


@app.get("/")
def root():
    return {"message": "Preview Sandbox API is running"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
