"""FastAPI application entrypoint for the transcode engine service."""
from __future__ import annotations

from typing import Final

from fastapi import FastAPI

from transcode_engine.api.http import router as api_router
from transcode_engine.api.ws import router as ws_router
from transcode_engine.core.config import Settings, get_settings
from transcode_engine.core.logging_cfg import setup_logging
from transcode_engine.services.acquisition import binary_exists, get_data_directory, get_install_path


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Notes
    -----
    - Routers are included for the HTTP command surface and WebSocket progress
      streaming.
    - Logging is configured up front based on settings; settings are loaded once.

    Returns
    -------
    FastAPI
        The configured FastAPI application.
    """

    settings: Settings = get_settings()
    setup_logging(settings.debug)

    app: FastAPI = FastAPI(title=settings.app_name)
    app.include_router(api_router)
    app.include_router(ws_router)

    @app.get("/health", tags=["system"])
    def health() -> dict[str, str]:
        """Health check endpoint.

        Notes
        -----
        - Lightweight liveness probe; does not run the transcoding binary.
        """

        install_path = get_install_path(settings)
        return {
            "status": "ok",
            "dataDirectory": str(get_data_directory(settings)),
            "installPath": str(install_path),
            "runtimeInstalled": str(binary_exists(install_path)).lower(),
        }

    return app


app: Final[FastAPI] = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("transcode_engine.main:app", host="127.0.0.1", port=8000, reload=True)
