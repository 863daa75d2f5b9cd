"""Soma entry point."""

import logging
import sys

from dotenv import find_dotenv, load_dotenv

USAGE = """usage: soma <command> [args]

commands:
  serve    Run the memory core HTTP server (default)
  db       Inspect and maintain the memory database (see `soma db -h`)"""


def serve() -> None:
    """Load configuration, wire the service and run the HTTP server."""
    import uvicorn

    from .agent import ConversationService
    from .config import load_config
    from .logging import configure_logger
    from .server import create_app

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    event_logger = configure_logger(config.log_dir)
    service = ConversationService.from_config(config, event_logger=event_logger)
    app = create_app(service)

    uvicorn.run(app, host=config.server.host, port=config.server.port)


def main() -> None:
    """Main entry point."""
    load_dotenv(find_dotenv(usecwd=True))

    if len(sys.argv) > 1:
        command = sys.argv[1]

        if command == "db":
            from .cli import run_db_cli

            # Pass remaining args (after 'db') to db CLI
            sys.exit(run_db_cli(sys.argv[2:]))

        if command in ("-h", "--help"):
            print(USAGE)
            return

        if command != "serve":
            print(USAGE)
            sys.exit(2)

    serve()


if __name__ == "__main__":
    main()
