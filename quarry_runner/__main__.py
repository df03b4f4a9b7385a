import uvicorn

from .config import settings
from .server import app


def main():
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
