import uvicorn

from skyclf.config import settings
from skyclf.logging_setup import configure_logging
from skyclf.main import create_application


def main() -> None:
    configure_logging(settings.log_level, settings.log_json)
    uvicorn.run(create_application(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
