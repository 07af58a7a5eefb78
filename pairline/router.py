# pairline/router.py
# The session router: decides what each inbound protocol message does.
# Dispatch is table-driven. Every handler is registered against its message type, and the
# "must be paired" precondition is checked once in dispatch() for the types that need it.
#
# Outcomes:
# - find-partner   -> matchmaking, then partner-found to both sides or waiting-for-partner to the sender.
# - offer / answer / ice-candidate -> forwarded verbatim to the partner only.
# - chat-message   -> re-sent to the partner with a server timestamp (after moderation, if enabled).
# - end-chat       -> session teardown, partner gets partner-disconnected.
# - anything else  -> dropped and logged.

import json             # For re-encoding relay messages that arrive without their original frame.
import logging          # For logging routing decisions and dropped messages.
import time             # For measuring relay latency.
from collections import Counter

from pairline import config     # For DEBUG and MAX_CHAT_MESSAGE_LENGTH.
from pairline import moderation # For the moderation action names.
from pairline import protocol   # For message type names and frame encoding.

# Message types that are meaningless unless the sender currently has a partner.
REQUIRES_PARTNER = protocol.RELAY_TYPES | {protocol.CHAT_MESSAGE}


class SessionRouter:
    """
    Routes decoded messages between paired clients.

    Args:
        registry (ConnectionRegistry): Client table and waiting queue.
        moderator (ChatModerator, optional): Consulted before chat messages are relayed.
        clock (callable, optional): High-resolution timer used for relay latency.
    """

    def __init__(self, registry, moderator=None, clock=time.perf_counter):
        self.registry = registry
        self.moderator = moderator
        self._clock = clock
        self._handlers = {
            protocol.FIND_PARTNER: self._handle_find_partner,
            protocol.CHAT_MESSAGE: self._handle_chat,
            protocol.END_CHAT: self._handle_end_chat,
        }
        for relay_type in protocol.RELAY_TYPES:
            self._handlers[relay_type] = self._handle_relay
        self.reset_stats()

    # --- Metrics ---

    def reset_stats(self):
        self.relayed = Counter()        # message type -> frames delivered to a partner
        self.dropped = 0                # frames discarded (unknown type, stale session, failed delivery)
        self.sessions_started = 0
        self.moderation_blocks = 0
        self.relay_seconds = 0.0        # cumulative time spent delivering relayed frames

    def stats(self):
        """Returns the routing counters together with the registry's current sizes."""
        relayed_total = sum(self.relayed.values())
        average_ms = (self.relay_seconds / relayed_total * 1000) if relayed_total else 0.0
        return {
            'connected': self.registry.connected_count,
            'waiting': self.registry.waiting_count,
            'sessions': self.registry.session_count,
            'sessions_started': self.sessions_started,
            'relayed': dict(self.relayed),
            'dropped': self.dropped,
            'moderation_blocks': self.moderation_blocks,
            'average_relay_ms': round(average_ms, 3),
        }

    # --- Entry Points ---

    async def dispatch(self, client_id, message, frame=None):
        """
        Applies one inbound message from client_id.

        Args:
            client_id (str): The sender.
            message (dict): The decoded message (has a string 'type').
            frame (str, optional): The original frame, forwarded as-is for relay messages.
        """
        client = self.registry.lookup(client_id)
        if client is None:
            logging.warning(f"Message from unregistered client '{client_id}' dropped.")
            self.dropped += 1
            return

        message_type = message.get('type')
        handler = self._handlers.get(message_type)
        if handler is None:
            logging.info(f"Unknown message type '{message_type}' from '{client_id}' ignored.")
            self.dropped += 1
            return

        partner = None
        if message_type in REQUIRES_PARTNER:
            partner = self.registry.partner_of(client_id)
            if partner is None:
                # No live session: drop, never queue or redirect to a later partner.
                if config.DEBUG:
                    logging.info(f"Dropped '{message_type}' from unpaired client '{client_id}'.")
                self.dropped += 1
                return

        await handler(client, partner, message, frame)

    async def disconnect(self, client_id):
        """Handles a closed connection. Safe from any state and for unknown ids."""
        if self.moderator is not None:
            self.moderator.forget(client_id)
        return await self.registry.unregister(client_id)

    # --- Handlers ---

    async def _handle_find_partner(self, client, partner, message, frame):
        if client.partner_id is not None:
            # The pairing is left as is and the sender gets no reply: waiting-for-partner would
            # misreport its state. Leaving a session takes an explicit end-chat.
            logging.info(f"'{client.id}' asked for a partner while paired with '{client.partner_id}'; ignored.")
            self.dropped += 1
            return

        partner_id = self.registry.match_request(client.id)
        if partner_id is None:
            await client.channel.send_json(protocol.WAITING_FOR_PARTNER)
            return

        self.sessions_started += 1
        partner = self.registry.lookup(partner_id)
        await client.channel.send_json(protocol.PARTNER_FOUND, partnerId=partner_id)
        await partner.channel.send_json(protocol.PARTNER_FOUND, partnerId=client.id)

    async def _handle_relay(self, client, partner, message, frame):
        if frame is None:
            frame = json.dumps(message)
        if config.DEBUG:
            logging.info(f"Relaying '{message['type']}' from '{client.id}' to '{partner.id}'")
        await self._deliver(partner, message['type'], frame)

    async def _handle_chat(self, client, partner, message, frame):
        text = message.get('message')
        if not isinstance(text, str) or len(text) > config.MAX_CHAT_MESSAGE_LENGTH:
            logging.warning(f"Invalid chat message from '{client.id}' dropped.")
            self.dropped += 1
            return

        if self.moderator is not None:
            result = self.moderator.analyze(text, client.id)
            if result.action == moderation.BLOCK:
                self.moderation_blocks += 1
                return
            if result.action == moderation.DISCONNECT:
                self.moderation_blocks += 1
                logging.warning(f"Disconnecting '{client.id}': {result.reason}")
                await self.disconnect(client.id)
                await client.channel.close(code=1008, reason="Disconnected by moderation")
                return

        outbound = protocol.encode(protocol.CHAT_MESSAGE, message=text, timestamp=protocol.utc_timestamp())
        await self._deliver(partner, protocol.CHAT_MESSAGE, outbound)

    async def _handle_end_chat(self, client, partner, message, frame):
        await self.registry.end_session(client.id)

    # --- Delivery ---

    async def _deliver(self, partner, message_type, frame):
        started = self._clock()
        delivered = await partner.channel.send(frame)
        if delivered:
            self.relayed[message_type] += 1
            self.relay_seconds += self._clock() - started
        else:
            self.dropped += 1
