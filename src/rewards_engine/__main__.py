import asyncio

from .app import configure_runtime, serve


def main() -> None:
    configure_runtime()
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
