"""API server entry point for python -m vidsum.api"""
import uvicorn

from vidsum import configure_logging
from vidsum.config import settings

if __name__ == "__main__":
    configure_logging()
    uvicorn.run(
        "vidsum.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
