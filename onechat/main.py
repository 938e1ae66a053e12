import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from onechat.api.deps import get_session
from onechat.api.routes_chat import router as chat_router
from onechat.api.routes_conversation import router as conversation_router
from onechat.api.routes_models import router as models_router
from onechat.api.routes_settings import router as settings_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app):
    session = get_session()
    await session.load()
    yield
    # Let pending conversation syncs finish before shutdown
    await session.wait_for_sync()


app = FastAPI(title="OneChat Backend", version=VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",     # Vite dev server
        "http://127.0.0.1:5173",
    ],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(chat_router)
app.include_router(conversation_router)
app.include_router(settings_router)
app.include_router(models_router)


@app.get("/api/health")
async def health_check():
    return {"status": "ok", "version": VERSION}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8765)
