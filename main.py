import uvicorn

from broadcast_engine.config_loader import load_settings
from broadcast_engine.logger import configure_logging
from broadcast_engine.server import build_app


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    # Engine starts inside the application lifespan, on uvicorn's event loop
    app = build_app(settings)
    uvicorn.run(app, host=str(settings.http_host), port=int(settings.http_port))
