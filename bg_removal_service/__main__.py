"""Run the service with uvicorn: `python -m bg_removal_service`."""

import uvicorn

from .config import get_settings


def main() -> None:
    settings = get_settings()
    # A single worker process: the model session is per process.
    uvicorn.run("bg_removal_service.api:app", host=settings.host, port=settings.port, workers=1)


if __name__ == "__main__":
    main()
