import uvicorn

from chat_relay.config import settings


def main() -> None:
    uvicorn.run("chat_relay.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
