# pairline/main.py
# Main entry point for starting the Pairline signaling server.
# Sets up logging, applies command-line overrides to the 'config' module, and runs
# the asynchronous server defined in the 'server' module.

import argparse # For the command-line overrides (host, port, debug, ssl).
import asyncio  # Runs the server's event loop.
import logging  # Standard logging for server events and errors.

from pairline import config # Server configuration constants.
from pairline import server # Transport, connection handler and start_server().

# Configure basic logging settings for the server application.
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Pairline matchmaking and signaling relay')
    parser.add_argument('--host', default=config.HOST, help=f'Interface to listen on (default: {config.HOST})')
    parser.add_argument('--port', type=int, default=config.PORT, help=f'Port to listen on (default: {config.PORT})')
    parser.add_argument('--debug', action='store_true', default=config.DEBUG, help='Log frame contents')
    parser.add_argument('--no-ssl', dest='ssl', action='store_false', default=config.ENABLE_SSL, help='Serve plain WS instead of WSS')
    parser.add_argument('--moderation', action='store_true', default=config.ENABLE_MODERATION, help='Screen chat messages before relaying them')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    config.HOST = args.host
    config.PORT = args.port
    config.DEBUG = args.debug
    config.ENABLE_SSL = args.ssl
    config.ENABLE_MODERATION = args.moderation

    logging.info("Attempting to start server from main.py...")
    logging.info(f"Using HOST={config.HOST}, PORT={config.PORT}")
    try:
        asyncio.run(server.start_server(config.HOST, config.PORT))
    except KeyboardInterrupt:
        # Graceful shutdown on Ctrl+C.
        logging.info("Server stopped manually via KeyboardInterrupt.")
    except Exception:
        logging.exception("Server failed to start or crashed in main.py")


if __name__ == "__main__":
    main()
