# pairline/server.py
# This file contains the WebSocket transport for the Pairline signaling server.
# Responsibilities include:
# - Accepting client connections and assigning each one a unique identifier.
# - Wrapping every connection in a Channel that makes sends after closure a harmless no-op.
# - Decoding inbound frames and handing them to the session router.
# - Implementing rate limiting for connections and messages to prevent abuse.
# - Running the disconnect path exactly once when a connection closes, however it closes.
# - Answering plain HTTP health and stats requests on the same port.
# - Setting up SSL context for Secure WebSockets (WSS) if configured.

import asyncio          # For asynchronous operations (coroutines, event loop).
import http             # For HTTP status codes on the health/stats endpoints.
import json             # For serializing the health/stats responses.
import logging          # For logging server events, warnings, and errors.
import ssl              # For creating SSL contexts for WSS.
import time             # For timestamping in rate limiting logic and uptime.
import uuid             # For generating client identifiers.

import websockets                                   # The WebSocket library used for server implementation.
from websockets.asyncio.server import serve         # asyncio WebSocket server.
from websockets.datastructures import Headers       # For building JSON HTTP responses.
from websockets.http11 import Response              # For answering non-WebSocket requests.
from websockets.protocol import State               # For checking whether a connection is still open.

from pairline import config     # Imports server configuration (HOST, PORT, SSL settings, Rate Limits, DEBUG).
from pairline import protocol   # Wire message types and frame decoding.
from pairline.moderation import ChatModerator
from pairline.registry import ConnectionRegistry
from pairline.router import SessionRouter


# Configure basic logging (ensures it's set if not already done in main.py).
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

# --- Shared State ---

# REGISTRY: Connected clients, their pairing state and the waiting queue.
REGISTRY = ConnectionRegistry()

# ROUTER: Applies inbound messages to the registry and delivers the resulting frames.
ROUTER = SessionRouter(REGISTRY)

# --- Rate Limiting State ---
# CONNECTION_ATTEMPTS: Recent connection timestamps per IP address.
# Structure: { 'ip_address' (string): [timestamp1 (float), timestamp2, ...], ... }
CONNECTION_ATTEMPTS = {}

# MESSAGE_TIMESTAMPS: Recent inbound frame timestamps per connected client id.
# Structure: { 'client_id' (string): [timestamp1 (float), timestamp2, ...], ... }
MESSAGE_TIMESTAMPS = {}

# SERVER_STARTED: Wall-clock start time, reported as uptime by /health.
SERVER_STARTED = time.time()


def reset_state():
    """
    Replaces the registry and router with fresh instances and clears rate limiting history.
    The moderator is attached here so that ENABLE_MODERATION is read after any runtime overrides.
    """
    global REGISTRY, ROUTER, SERVER_STARTED
    REGISTRY = ConnectionRegistry()
    moderator = ChatModerator() if config.ENABLE_MODERATION else None
    ROUTER = SessionRouter(REGISTRY, moderator=moderator)
    CONNECTION_ATTEMPTS.clear()
    MESSAGE_TIMESTAMPS.clear()
    SERVER_STARTED = time.time()


# --- Channel ---
class Channel:
    """
    The output side of one client connection.
    Sends on a closed connection are a no-op that returns False, never an exception,
    so router state is never disturbed by a peer that vanished mid-relay.

    Args:
        websocket (websockets.asyncio.server.ServerConnection): The client's connection.
    """

    def __init__(self, websocket):
        self.websocket = websocket

    @property
    def is_open(self):
        return self.websocket.state is State.OPEN

    async def send(self, frame):
        """
        Sends one already-encoded frame.

        Returns:
            bool: True if the frame was handed to the connection, False if it is closed.
        """
        if not self.is_open:
            return False
        try:
            await self.websocket.send(frame)
            return True
        except websockets.exceptions.ConnectionClosed:
            # Expected when the client disconnects abruptly between the state check and the send.
            logging.warning(f"Failed to send to {self.websocket.remote_address} because connection is closed.")
            return False

    async def send_json(self, message_type, **fields):
        """Encodes and sends a server message. Returns the same result as send()."""
        frame = protocol.encode(message_type, **fields)
        if config.DEBUG:
            logging.info(f"Sending to {self.websocket.remote_address}: {frame}")
        return await self.send(frame)

    async def close(self, code=1000, reason=''):
        # Closing an already closed connection does nothing.
        await self.websocket.close(code=code, reason=reason)


# --- Identifier Assignment ---
def assign_client_id():
    """Returns a new identifier that no live client is using."""
    while True:
        client_id = uuid.uuid4().hex[:config.CLIENT_ID_LENGTH]
        if client_id not in REGISTRY:
            return client_id


# --- Rate Limiting Helpers ---
def _within_limit(timestamps, now, window, limit):
    """
    Drops timestamps older than the window, records `now` if the limit allows it.

    Returns:
        tuple(bool, list): Whether the new event is allowed, and the pruned timestamp list.
    """
    recent = [t for t in timestamps if now - t < window]
    if len(recent) >= limit:
        return False, recent
    recent.append(now)
    return True, recent


def _forget_idle_addresses(now):
    """Removes IPs from CONNECTION_ATTEMPTS whose attempts have all left the window."""
    for ip in [ip for ip, times in CONNECTION_ATTEMPTS.items()
               if not any(now - t < config.CONNECTION_WINDOW_SECONDS for t in times)]:
        del CONNECTION_ATTEMPTS[ip]


# --- HTTP Endpoints ---
def _json_response(status, payload):
    body = json.dumps(payload).encode('utf-8')
    headers = Headers([
        ('Content-Type', 'application/json'),
        ('Content-Length', str(len(body))),
        ('Connection', 'close'),
    ])
    return Response(status.value, status.phrase, headers, body)


def process_request(connection, request):
    """
    Runs before the WebSocket handshake.
    Answers /health and /stats over plain HTTP, rejects unknown paths with 404,
    and lets requests for WS_PATH continue to the handshake.
    """
    path = request.path.split('?', 1)[0]
    if path == '/health':
        return _json_response(http.HTTPStatus.OK, {
            'status': 'healthy',
            'timestamp': protocol.utc_timestamp(),
            'uptime': round(time.time() - SERVER_STARTED, 3),
        })
    if path == '/stats':
        return _json_response(http.HTTPStatus.OK, ROUTER.stats())
    if path != config.WS_PATH:
        return connection.respond(http.HTTPStatus.NOT_FOUND, "Not Found\n")
    return None


# --- Main Connection Handler ---
async def connection_handler(websocket):
    """
    Handles one client connection from open to close.
    1. Applies connection rate limiting per IP.
    2. Registers the client and sends it 'connected' with its identifier.
    3. Reads frames, applies message rate limiting, decodes, and dispatches to the router.
    4. On closure of any kind, runs the router's disconnect path exactly once.

    Args:
        websocket (websockets.asyncio.server.ServerConnection): The client's connection.
    """
    remote_address = websocket.remote_address or ('unknown', 0)
    client_ip = remote_address[0]

    # --- Connection Rate Limiting ---
    now = time.time()
    _forget_idle_addresses(now)
    allowed, attempts = _within_limit(
        CONNECTION_ATTEMPTS.get(client_ip, []), now,
        config.CONNECTION_WINDOW_SECONDS, config.MAX_CONNECTIONS_PER_IP)
    CONNECTION_ATTEMPTS[client_ip] = attempts
    if not allowed:
        logging.warning(f"Connection rate limit exceeded for IP {client_ip}. Closing connection.")
        await websocket.close(code=1008, reason="Connection rate limit exceeded")
        return

    channel = Channel(websocket)
    client_id = assign_client_id()
    REGISTRY.register(client_id, channel)
    MESSAGE_TIMESTAMPS[client_id] = []
    logging.info(f"Client '{client_id}' connected from {client_ip}:{remote_address[1]}")

    try:
        await channel.send_json(protocol.CONNECTED, clientId=client_id)

        # --- Message Receiving Loop ---
        async for frame in websocket:
            # --- Message Rate Limiting ---
            allowed, MESSAGE_TIMESTAMPS[client_id] = _within_limit(
                MESSAGE_TIMESTAMPS.get(client_id, []), time.time(),
                config.MESSAGE_WINDOW_SECONDS, config.MAX_MESSAGES_PER_CONNECTION)
            if not allowed:
                logging.warning(f"Message rate limit exceeded for '{client_id}'. Sending notification and closing connection.")
                await channel.send_json(protocol.ERROR, message="Message rate limit exceeded. Disconnecting.")
                await channel.close(code=1008, reason="Message rate limit exceeded")
                break

            if config.DEBUG:
                logging.info(f"Raw message received from '{client_id}': {frame!r}")

            message = protocol.decode_frame(frame)
            if message is None:
                continue

            try:
                await ROUTER.dispatch(client_id, message, frame if isinstance(frame, str) else None)
            except Exception:
                # A routing bug must not take the connection down with it.
                logging.exception(f"Unexpected error routing '{message.get('type')}' from '{client_id}'")

    # --- Connection Closed Handling ---
    except websockets.exceptions.ConnectionClosedOK:
        logging.info(f"Client '{client_id}' disconnected gracefully.")
    except websockets.exceptions.ConnectionClosedError as e:
        logging.info(f"Client '{client_id}' disconnected with error: {e}")
    except Exception:
        logging.exception(f"An unexpected error occurred handling client '{client_id}'")
    finally:
        # --- Cleanup ---
        MESSAGE_TIMESTAMPS.pop(client_id, None)
        await ROUTER.disconnect(client_id)
        logging.info(f"Connection closed for '{client_id}' ({remote_address[0]}:{remote_address[1]})")


# --- SSL Setup ---
def create_ssl_context():
    """
    Builds a TLS server context from CERT_FILE and KEY_FILE.

    Returns:
        ssl.SSLContext | None: The context, or None when SSL is disabled or the certificate pair
                               cannot be loaded (the server then falls back to unencrypted WS).
    """
    if not config.ENABLE_SSL:
        return None
    try:
        logging.info(f"Attempting to load SSL cert: {config.CERT_FILE}")
        logging.info(f"Attempting to load SSL key: {config.KEY_FILE}")
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.CERT_FILE, config.KEY_FILE)
        logging.info("SSL context created successfully. Server will use WSS.")
        return ssl_context
    except FileNotFoundError:
        logging.error(f"SSL Error: Certificate or Key file not found (Cert: '{config.CERT_FILE}', Key: '{config.KEY_FILE}'). Disabling SSL, falling back to WS.")
    except (ssl.SSLError, OSError):
        logging.exception("SSL Error: Failed to create SSL context. Disabling SSL, falling back to WS.")
    return None


# --- Server Startup Function ---
async def start_server(host, port):
    """
    Starts the signaling server on host:port and runs it until the process is stopped.

    Args:
        host (str): The hostname or IP address to bind the server to.
        port (int): The port number to bind the server to.
    """
    reset_state()
    ssl_context = create_ssl_context()
    effective_protocol = "wss" if ssl_context else "ws"

    logging.info(f"Starting server on {effective_protocol}://{host}:{port}{config.WS_PATH}")
    logging.info(f"Connection Rate Limit: {config.MAX_CONNECTIONS_PER_IP} per {config.CONNECTION_WINDOW_SECONDS}s per IP")
    logging.info(f"Message Rate Limit: {config.MAX_MESSAGES_PER_CONNECTION} per {config.MESSAGE_WINDOW_SECONDS}s per Connection")
    logging.info(f"Maximum WebSocket message size set to: {config.MAX_MESSAGE_SIZE} bytes")
    logging.info(f"Chat Moderation: {'ENABLED' if ROUTER.moderator else 'DISABLED'}")
    logging.info(f"Server Debug Logging: {'ENABLED' if config.DEBUG else 'DISABLED'}")

    try:
        async with serve(
            connection_handler,
            host,
            port,
            ssl=ssl_context,
            max_size=config.MAX_MESSAGE_SIZE,
            ping_interval=config.PING_INTERVAL,
            ping_timeout=config.PING_TIMEOUT,
            process_request=process_request,
        ):
            await asyncio.Future() # Runs until cancelled.
    except OSError:
        logging.exception(f"OSError starting server on {host}:{port} - Is the port already in use?")
        raise
