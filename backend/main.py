import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import LOG_LEVEL, WEB_ORIGIN
from database import init_db
from routes.chat import router as chat_router, shutdown_chat_service
from routes.chat_context import TurnContextFilter

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] session=%(session_id)s caller=%(caller_id)s %(message)s"


def _setup_logging():
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        handler.addFilter(TurnContextFilter())


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield
    shutdown_chat_service()


_setup_logging()
app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in ["http://localhost:5173", WEB_ORIGIN] if o],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.get("/health")
def health():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
