"""API server entry point for python -m renderpipe.api"""
import uvicorn
from renderpipe.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "renderpipe.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
