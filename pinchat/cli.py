import argparse

import uvicorn

from pinchat.config import HOST, PORT, RELOAD_ENABLED


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the PinChat relay server")
    parser.add_argument("--host", default=HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=PORT, help="Bind port")
    parser.add_argument(
        "--reload",
        action="store_true",
        default=RELOAD_ENABLED,
        help="Enable auto-reload for development",
    )
    args = parser.parse_args()

    uvicorn.run(
        "pinchat.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
