import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


def build_client():
    """GameClient on the configured store backend."""
    from services.game_client import GameClient

    if settings.store_backend == "memory":
        from services.memory_store import InMemoryDocumentStore, InMemoryEphemeralStore
        return GameClient(InMemoryDocumentStore(), InMemoryEphemeralStore())

    from services.firestore_service import get_firestore_service
    from services.ephemeral_store import FirestoreEphemeralStore
    fs = get_firestore_service()
    return GameClient(fs, FirestoreEphemeralStore(fs.db))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Gnosia room client starting up (store backend: %s)", settings.store_backend)
    app.state.client = build_client()
    app.state.connections = ConnectionManager()
    yield
    await app.state.client.close()
    logger.info("Client shutting down.")


app = FastAPI(
    title="Gnosia Room",
    version="0.1.0",
    description="Host-authoritative hidden-role party game client",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "gnosia-room", "version": "0.1.0"}


from routers.game_router import router as game_router
from routers.ws_router import ConnectionManager, router as ws_router

app.include_router(game_router, prefix="/api")
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
