"""
Entrypoint - HTTP Server Launcher
"""
import uvicorn

from n8n_deployer.core.config import get_settings

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "n8n_deployer.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="info" if settings.debug else "warning",
        access_log=settings.debug
    )
