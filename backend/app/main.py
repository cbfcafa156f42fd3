"""ConvoManage Backend Application.

This is the main entry point for the ConvoManage backend service.
ConvoManage runs conference sessions with live chat, moderated Q&A and
peer-to-peer video, coordinated through one authenticated WebSocket hub.

Modules:
    - realtime: WebSocket hub (presence, chat/Q&A relay, WebRTC signaling)
    - chat: Chat history, messages, announcements and likes over REST
    - qa: Questions, votes, answers and categories over REST
    - sessions: Session catalogue and registration
    - users: Current account and online users
    - store: DuckDB persistence
    - auth: JWT bearer authentication
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.chat.router import router as chat_router
from app.config import get_config
from app.qa.router import router as qa_router
from app.realtime import get_hub, set_hub
from app.realtime.router import router as realtime_router
from app.sessions.router import router as sessions_router
from app.store.service import ConferenceStore
from app.users.router import router as users_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn logs every WebSocket frame at DEBUG; keep it out of app debugging.
for _noisy in ("websockets", "websockets.protocol", "uvicorn.protocols"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in convomanage.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # Builds the hub (and opens the DuckDB store) unless one was installed already.
    get_hub()
    logger.info(
        f"Session hub ready. Server running on "
        f"http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    set_hub(None)
    ConferenceStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="ConvoManage API",
    description="Backend service for ConvoManage - conference sessions with live chat, Q&A and video",
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

# Register all routers
app.include_router(realtime_router)
app.include_router(chat_router)
app.include_router(qa_router)
app.include_router(sessions_router)
app.include_router(users_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running, with the
            number of identities currently online.
    """
    return {"status": "ok", "online": len(get_hub().presence.list_online())}
