"""taskrail-core FastAPI application."""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import get_settings
from .routers import cards, metrics, milestones, rules, tasks

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("taskrail-core")

settings = get_settings()
logger.info("Starting taskrail-core API")

# Create FastAPI app
app = FastAPI(
    title="taskrail-core API",
    description="Task, card and milestone lifecycle with rule-driven automation",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tasks.router, prefix="/api/v1/tasks")
app.include_router(cards.router, prefix="/api/v1/cards")
app.include_router(milestones.router, prefix="/api/v1/milestones")
app.include_router(rules.router, prefix="/api/v1/rules")
app.include_router(metrics.router, prefix="/api/v1/metrics")


@app.get("/")
def root():
    """Root endpoint with server info."""
    return {
        "name": "taskrail-core API",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
