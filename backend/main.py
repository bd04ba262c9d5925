import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Traitors relay starting up...")
    yield
    logger.info("Relay shutting down.")


app = FastAPI(
    title="Traitors",
    version="0.1.0",
    description="Signalling and message relay for host-authoritative Traitors games",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    from routers.relay_router import hub
    return {"status": "ok", "service": "traitors-relay", "version": "0.1.0", "peers": hub.count()}


from routers.relay_router import router as relay_router

app.include_router(relay_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
