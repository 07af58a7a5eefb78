# pairline/registry.py
# The connection registry: the single source of truth for which clients are connected
# and how they are paired. It owns an identifier-keyed table of Client records and the
# FIFO waiting queue used for matchmaking.
#
# All state changes happen synchronously before any await, so on a single asyncio event
# loop each operation is one atomic step. Partner notifications are sent afterwards.

import logging                              # For logging registration, pairing and teardown events.
from dataclasses import dataclass           # For the Client record.

from pairline import config                 # For the DEBUG flag.
from pairline import protocol               # For the partner-disconnected message type.

# Client states reported by Client.state.
IDLE = 'idle'
WAITING = 'waiting'
PAIRED = 'paired'


class DuplicateClientError(ValueError):
    """Raised when an identifier is registered while it is still live. Server-assigned ids make this a bug."""


@dataclass
class Client:
    """One live connection and its pairing state."""
    id: str
    channel: object             # Output handle owned by this client (see server.Channel).
    partner_id: str = None      # Lookup key of the partner in the registry, never a reference to its record.
    is_waiting: bool = False    # True iff the id is in the waiting queue.

    @property
    def state(self):
        if self.partner_id is not None:
            return PAIRED
        if self.is_waiting:
            return WAITING
        return IDLE


class ConnectionRegistry:
    """
    Tracks connected clients, the waiting queue and the symmetric partner relation.

    Invariants kept by every operation:
    - the queue holds exactly the ids of clients with is_waiting set, each once;
    - if A.partner_id == B then B.partner_id == A, and neither is queued.
    """

    def __init__(self):
        self._clients = {}  # client id -> Client
        self._queue = []    # waiting client ids, longest-waiting first

    # --- Lookup ---

    def __contains__(self, client_id):
        return client_id in self._clients

    def __len__(self):
        return len(self._clients)

    def lookup(self, client_id):
        """Returns the Client registered under client_id, or None."""
        return self._clients.get(client_id)

    def partner_of(self, client_id):
        """Returns the partner Client of client_id if it is paired, else None."""
        client = self._clients.get(client_id)
        if client is None or client.partner_id is None:
            return None
        return self._clients.get(client.partner_id)

    def waiting_ids(self):
        """Returns a snapshot of the waiting queue, head first."""
        return tuple(self._queue)

    def client_ids(self):
        return tuple(self._clients)

    @property
    def connected_count(self):
        return len(self._clients)

    @property
    def waiting_count(self):
        return len(self._queue)

    @property
    def session_count(self):
        return sum(1 for client in self._clients.values() if client.partner_id is not None) // 2

    # --- Registration ---

    def register(self, client_id, channel):
        """
        Creates an idle Client for a newly opened connection.

        Args:
            client_id (str): The server-assigned identifier.
            channel: The connection's output handle.

        Returns:
            Client: The new record.

        Raises:
            DuplicateClientError: If client_id is already registered.
        """
        if client_id in self._clients:
            raise DuplicateClientError(f"Client '{client_id}' is already registered.")
        client = Client(id=client_id, channel=channel)
        self._clients[client_id] = client
        logging.info(f"Registered client '{client_id}' ({self.connected_count} connected)")
        return client

    async def unregister(self, client_id):
        """
        Removes a client when its connection closes, from whatever state it is in.
        A waiting client leaves the queue. A paired client's partner goes back to idle
        and is sent partner-disconnected (best effort).
        Unknown ids are ignored, so calling this twice is harmless.

        Args:
            client_id (str): The identifier of the closing connection.

        Returns:
            Client | None: The former partner, if the client was paired.
        """
        client = self._clients.pop(client_id, None)
        if client is None:
            if config.DEBUG:
                logging.info(f"Unregister for unknown client '{client_id}' ignored.")
            return None

        self._dequeue(client)
        partner = self._detach(client)
        logging.info(f"Unregistered client '{client_id}' ({self.connected_count} connected)")

        if partner is not None:
            logging.info(f"Notifying '{partner.id}' that partner '{client_id}' disconnected.")
            await partner.channel.send_json(protocol.PARTNER_DISCONNECTED)
        return partner

    # --- Sessions ---

    async def end_session(self, client_id):
        """
        Tears down client_id's pairing without removing either client.
        Both sides end up idle and may enter matchmaking again. The partner is notified (best effort).

        Returns:
            Client | None: The former partner, or None if client_id was not paired.
        """
        client = self._clients.get(client_id)
        if client is None or client.partner_id is None:
            return None

        partner = self._detach(client)
        logging.info(f"Session ended by '{client_id}'" + (f" (partner '{partner.id}')" if partner else ""))

        if partner is not None:
            await partner.channel.send_json(protocol.PARTNER_DISCONNECTED)
        return partner

    def match_request(self, client_id):
        """
        Puts client_id in the waiting queue (once) and pairs it with the longest-waiting
        other client whose channel is still open. Queue entries whose client is gone or
        whose channel is closed are evicted while scanning.

        A client that is already paired is left untouched.

        Args:
            client_id (str): The client asking for a partner.

        Returns:
            str | None: The matched partner's id, or None if the client is unknown,
                        already paired, or still waiting.
        """
        client = self._clients.get(client_id)
        if client is None:
            logging.warning(f"Match request from unregistered client '{client_id}' ignored.")
            return None
        if client.partner_id is not None:
            return None

        if not client.is_waiting:
            self._queue.append(client_id)
            client.is_waiting = True

        partner = None
        for waiting_id in list(self._queue):
            if waiting_id == client_id:
                continue
            candidate = self._clients.get(waiting_id)
            if candidate is None or not candidate.channel.is_open:
                # Stale entry left behind by a disconnect that has not been processed yet.
                self._queue.remove(waiting_id)
                if candidate is not None:
                    candidate.is_waiting = False
                logging.info(f"Evicted stale queue entry '{waiting_id}'.")
                continue
            partner = candidate
            break

        if partner is None:
            if config.DEBUG:
                logging.info(f"'{client_id}' is waiting ({self.waiting_count} in queue)")
            return None

        self._dequeue(client)
        self._dequeue(partner)
        client.partner_id = partner.id
        partner.partner_id = client.id
        logging.info(f"Paired '{partner.id}' with '{client_id}' ({self.waiting_count} still waiting)")
        return partner.id

    # --- Internal Helpers ---

    def _dequeue(self, client):
        if client.is_waiting:
            self._queue.remove(client.id)
            client.is_waiting = False

    def _detach(self, client):
        # Clears both sides of a pairing. Returns the partner record if it is still registered.
        partner_id = client.partner_id
        client.partner_id = None
        client.is_waiting = False
        if partner_id is None:
            return None
        partner = self._clients.get(partner_id)
        if partner is None:
            return None
        if partner.partner_id != client.id:
            return None
        partner.partner_id = None
        partner.is_waiting = False
        return partner
