"""Health check endpoint."""

from fastapi import APIRouter
import fastapi
import PIL
import pydantic
import pypdf
import platform
import sys

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


@router.get("/health")
async def health_check():
    """Service health, queue status, and library versions."""
    queue = _dispatcher.stats() if _dispatcher is not None else None
    return {
        "status": "healthy" if _dispatcher is not None else "starting",
        "queue": queue,
        "versions": {
            "fastapi": fastapi.__version__,
            "pydantic": pydantic.VERSION,
            "pillow": PIL.__version__,
            "pypdf": pypdf.__version__,
        },
        "python_version": sys.version,
        "platform": platform.platform(),
    }
