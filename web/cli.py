"""
CLI entry point for the Code Pilot web server.

Run:  python -m web [--port 3000] [--host 127.0.0.1]
"""

import argparse
import logging

from config import app_config, get_credentials_info, github_config, sandbox_config

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
PROJECT_LOGGERS = ("web", "agent", "tools", "sandbox", "sessions", "bedrock_service", "github_api", "backend")


def configure_logging(level: int = logging.INFO) -> None:
    """Attach one stream handler to the project loggers; uvicorn's log_level only covers its own."""
    formatter = logging.Formatter(LOG_FORMAT)
    for name in PROJECT_LOGGERS:
        log = logging.getLogger(name)
        log.setLevel(level)
        if not log.handlers:
            h = logging.StreamHandler()
            h.setLevel(level)
            h.setFormatter(formatter)
            log.addHandler(h)


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Code Pilot web server")
    parser.add_argument("--port", type=int, default=app_config.port, help=f"Server port (default: {app_config.port})")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    print(f"\n  Code Pilot")
    print(f"  http://{args.host}:{args.port}")
    print(f"  Environment: {app_config.environment}")
    print(f"  Sandbox: {'remote (' + sandbox_config.ssh_host + ')' if sandbox_config.use_remote else 'local'}")
    print(f"  GitHub: {'token configured' if github_config.has_token() else 'no token, pull requests are mocked'}")
    print(f"  {get_credentials_info()}\n")

    from web import app
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
