"""paperchat backend application.

Entry point for the paper-scoped messaging service: teachers and the
students who attempted their papers exchange messages per paper, over HTTP
and over a WebSocket.

Modules:
    - auth: bearer-token verification
    - chat: rooms, messages, visibility, unread counts and real-time gateway
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from paperchat.chat.database import ChatDatabase
from paperchat.chat.gateway import router as gateway_router
from paperchat.chat.router import router as chat_router
from paperchat.config import get_config
from paperchat.errors import ChatError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Connection-level chatter from the HTTP and WebSocket stacks is rarely
# useful when debugging chat logic.
for _noisy in (
    "urllib3",
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # `logging.level: "debug"` in paperchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    db = ChatDatabase.get_instance(config.database.path)
    logger.info("Chat store ready at %s", db.db_path)

    yield  # Application runs here

    # Shutdown
    ChatDatabase.reset_instance()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="paperchat API",
    description="Paper-scoped teacher/student messaging",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Register all routers
app.include_router(chat_router)
app.include_router(gateway_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    server = get_config().server
    uvicorn.run(app, host=server.host, port=server.port)


if __name__ == "__main__":
    run()
