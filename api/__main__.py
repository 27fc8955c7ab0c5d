"""Run the API with uvicorn: python -m api"""

import uvicorn

from core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("api.main:app", host=settings.host, port=settings.port, reload=settings.debug)


if __name__ == "__main__":
    main()
