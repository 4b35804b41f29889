import argparse
import os
from typing import Optional

import uvicorn

# Flags that override a config value for this run; exported before the app is imported.
_ENV_FLAGS = {
    "api_url": "CLINICSYNC_API_URL",
    "socket_url": "CLINICSYNC_SOCKET_URL",
    "transports": "CLINICSYNC_TRANSPORTS",
    "db": "CLINICSYNC_DB",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clinicsync",
        description="Run the ClinicSync local client: one synced session served over HTTP/SSE",
    )
    parser.add_argument("--host", help="Bind host for the local adapter")
    parser.add_argument("--port", type=int, help="Bind port for the local adapter")
    parser.add_argument("--api-url", help="Clinic REST service base URL")
    parser.add_argument("--socket-url", help="Clinic realtime channel URL")
    parser.add_argument("--transports", help="Comma-separated channel transports, tried in order")
    parser.add_argument("--db", help="SQLite file holding the persisted login")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    for attr, env_name in _ENV_FLAGS.items():
        value = getattr(args, attr)
        if value:
            os.environ[env_name] = value

    from clinicsync.config import HOST, PORT

    uvicorn.run(
        "clinicsync.main:app",
        host=args.host or HOST,
        port=args.port or PORT,
        reload=args.reload,
        log_level=args.log_level,
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
