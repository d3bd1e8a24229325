import uvicorn

from providerhub.config import settings


def main():
    uvicorn.run(
        "providerhub.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
