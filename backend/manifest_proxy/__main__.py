import uvicorn

from manifest_proxy.core.config import settings


def main():
    uvicorn.run(
        "manifest_proxy.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
