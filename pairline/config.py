# pairline/config.py
# This file centralizes configuration settings for the Pairline signaling server.
# Values are plain module-level constants. Other modules read them as `config.NAME`
# at call time, so the entry point (and the tests) may override them at runtime.

import os # Import the 'os' module to help construct file paths reliably across different operating systems.

# --- Network Configuration ---

# HOST: The IP address the server should listen on.
# - '0.0.0.0': Listen on all available network interfaces.
# - '127.0.0.1' or 'localhost': Listen only on the local machine.
HOST = '0.0.0.0'

# PORT: The TCP port number the server should listen on (WebSocket and HTTP health/stats share it).
PORT = 5000

# WS_PATH: The only request path that is upgraded to a WebSocket connection.
# Every other path is answered over plain HTTP (/health, /stats) or with 404.
WS_PATH = '/ws'

# --- SSL Configuration ---

# CERT_DIR: The directory where SSL certificate files (cert.pem, key.pem) are expected to be located.
# Calculated relative to this config file's location (pairline/ -> ../certs/).
CERT_DIR = os.path.join(os.path.dirname(__file__), '..', 'certs')

# CERT_FILE / KEY_FILE: Certificate chain and private key used when ENABLE_SSL is True.
CERT_FILE = os.path.join(CERT_DIR, 'cert.pem')
KEY_FILE = os.path.join(CERT_DIR, 'key.pem')

# ENABLE_SSL: Serve WSS instead of WS.
# If the certificate pair cannot be loaded the server logs the error and falls back to WS.
ENABLE_SSL = True

# --- Rate Limiting Configuration ---

# Connection Rate Limiting (per IP address)
# MAX_CONNECTIONS_PER_IP: New connections allowed from one IP within CONNECTION_WINDOW_SECONDS.
MAX_CONNECTIONS_PER_IP = 10
CONNECTION_WINDOW_SECONDS = 60

# Message Rate Limiting (per connection)
# MAX_MESSAGES_PER_CONNECTION: Frames allowed from one connection within MESSAGE_WINDOW_SECONDS.
# ICE candidates arrive in bursts during negotiation, so this is more generous than a plain chat relay needs.
MAX_MESSAGES_PER_CONNECTION = 60
MESSAGE_WINDOW_SECONDS = 5

# --- Message Limits ---

# MAX_MESSAGE_SIZE: Largest inbound WebSocket frame in bytes. SDP offers are the biggest legitimate frames.
MAX_MESSAGE_SIZE = 64 * 1024

# MAX_CHAT_MESSAGE_LENGTH: Chat text longer than this (in characters) is dropped instead of relayed.
MAX_CHAT_MESSAGE_LENGTH = 2000

# --- Keepalive Configuration ---

# PING_INTERVAL / PING_TIMEOUT: Seconds between transport pings and how long to wait for the pong.
# A peer that stops answering is closed, which runs the normal disconnect path.
PING_INTERVAL = 20
PING_TIMEOUT = 20

# --- Client Identifiers ---

# CLIENT_ID_LENGTH: Number of hex characters in a server-assigned client identifier.
CLIENT_ID_LENGTH = 12

# --- Moderation Configuration ---

# ENABLE_MODERATION: Run chat messages through the ChatModerator before relaying them.
ENABLE_MODERATION = False

# RAPID_MESSAGE_SECONDS: Two chat messages from one sender closer together than this raise a warning.
RAPID_MESSAGE_SECONDS = 1.0

# --- Debugging Configuration ---

# DEBUG: Verbose logging of frame contents.
# Essential logs (connections, pairing, errors, warnings) are emitted regardless of this flag.
DEBUG = False
