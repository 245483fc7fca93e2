import uvicorn

from .config import Settings, configure_logging
from .main import create_app

if __name__ == "__main__":
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
