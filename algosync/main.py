from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from algosync.core.db import init_db, close_db
from algosync.api.v1.sync import get_saga, router as sync_router
from algosync.api.v1.outbox import router as outbox_router
from algosync.core.config import PROJECT_NAME, VERSION
from algosync.core.exception_handlers import setup_exception_handlers

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    print(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db() # Connect to DB and generate schemas
    yield
    if get_saga.cache_info().currsize:
        await get_saga().collector.api_client.close() # Release the solved.ac HTTP pool
    await close_db()
    print(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.include_router(sync_router, prefix="/api/v1/sync", tags=["Initial Data Sync"])
app.include_router(outbox_router, prefix="/api/v1/outbox", tags=["Outbox"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}
