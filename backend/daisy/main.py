import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import api_router
from .config import get_settings
from .services.workflow_session import get_session

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    # Startup
    session = get_session()
    logger.info(
        "Starting Daisy workflow engine (capabilities at %s, credentials: %s)",
        settings.capability_base_url,
        session.credentials.configured(),
    )

    yield

    # Shutdown
    session.signaler.deactivate_all()
    logger.info("Daisy workflow engine stopped")


app = FastAPI(
    title="Daisy",
    description="Execution engine for the Daisy visual AI workflow editor: a canvas of text, image, AI prompt and generation nodes run one node at a time.",
    lifespan=lifespan,
)

# Local development front-ends
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
