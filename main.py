from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from config import settings
from logging_config import setup_logging
from schemas import HealthResponse
from core.room_registry import registry
from api import rooms, gateway

setup_logging(log_level=settings.log_level, log_file=settings.log_file)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Buzzer backend starting up")
    yield
    # Shutdown: 關閉所有連線，丟棄記憶體中的房間
    await gateway.gateway.close_all()
    await registry.shutdown()
    logger.info("Buzzer backend shut down")


app = FastAPI(
    title="Buzzer Game API",
    description="Room synchronization and buzz arbitration for live buzzer games",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(rooms.router)
app.include_router(gateway.router)


@app.get("/")
def root():
    return {"message": "Buzzer Game API", "status": "ok"}


@app.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="healthy", rooms=registry.room_count())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
