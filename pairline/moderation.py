# pairline/moderation.py
# Optional chat moderation hook consulted by the router before a chat message is relayed.
# It looks for suspicious phrases and for rapid-fire messaging, and keeps a set of reported senders.
# The decision is one of: allow, warn (relay anyway), block (drop the message) or disconnect.

import logging          # For logging moderation decisions.
import re               # For the suspicious-phrase patterns.
import time             # For measuring the gap between a sender's messages.
from dataclasses import dataclass

from pairline import config # For RAPID_MESSAGE_SECONDS.

# Threat levels in increasing order of severity.
THREAT_LEVELS = ('none', 'low', 'medium', 'high', 'critical')

# Actions returned to the router.
ALLOW = 'allow'
WARN = 'warn'
BLOCK = 'block'
DISCONNECT = 'disconnect'

# Phrases that ask for personal details or steer the conversation somewhere unsafe.
DEFAULT_PATTERNS = (
    r"\b(?:meet\s+up|hook\s+up|come\s+over)\b",
    r"\b(?:age|old\s+are\s+you|how\s+old)\b",
    r"\b(?:location|address|where\s+do\s+you\s+live)\b",
    r"\b(?:phone|number|contact)\b",
    r"\b(?:personal|private|secret)\b",
    r"\b(?:nude|naked|undressed)\b",
    r"\b(?:sexy|hot|beautiful)\b",
)


@dataclass(frozen=True)
class ModerationResult:
    allowed: bool
    threat_level: str
    action: str
    reason: str = None


def escalate(current, new_level):
    """Returns the more severe of two threat levels."""
    return max(current, new_level, key=THREAT_LEVELS.index)


class ChatModerator:
    """
    Scores chat messages and decides whether the router may relay them.

    Args:
        patterns (iterable[str], optional): Regular expressions that mark a message as suspicious.
                                            Defaults to DEFAULT_PATTERNS.
        clock (callable, optional): Returns the current time in seconds. Defaults to time.time.
    """

    def __init__(self, patterns=None, clock=time.time):
        self._patterns = [re.compile(p, re.IGNORECASE) for p in (patterns or DEFAULT_PATTERNS)]
        self._clock = clock
        self._reported = set()  # Client ids flagged for safety violations.
        self._activity = {}     # client id -> {'timestamp': float, 'warnings': int}

    def analyze(self, text, client_id):
        """
        Scores one chat message from client_id.

        Args:
            text (str): The chat text.
            client_id (str): The sender.

        Returns:
            ModerationResult: The decision for this message.
        """
        threat_level = 'none'
        matched = 0

        for pattern in self._patterns:
            if pattern.search(text):
                matched += 1
                threat_level = escalate(threat_level, 'medium')

        now = self._clock()
        activity = self._activity.get(client_id)
        if activity is None:
            self._activity[client_id] = {'timestamp': now, 'warnings': 0}
        else:
            if now - activity['timestamp'] < config.RAPID_MESSAGE_SECONDS:
                threat_level = escalate(threat_level, 'low')
                activity['warnings'] += 1
            activity['timestamp'] = now

        action, allowed, reason = ALLOW, True, None
        if threat_level == 'low':
            action = WARN
        elif threat_level == 'medium':
            action, allowed = BLOCK, False
            reason = "Message contains potentially inappropriate content"
        elif threat_level in ('high', 'critical'):
            action, allowed = DISCONNECT, False
            reason = "Serious safety violation detected"
            self._reported.add(client_id)

        if client_id in self._reported:
            action, allowed = DISCONNECT, False
            reason = "User has been flagged for safety violations"

        if action != ALLOW:
            logging.warning(f"Moderation: {action} message from '{client_id}' (threat={threat_level}, patterns={matched})")
        elif config.DEBUG:
            logging.info(f"Moderation: allowed message from '{client_id}'")

        return ModerationResult(allowed=allowed, threat_level=threat_level, action=action, reason=reason)

    def report_user(self, client_id, reason):
        """Flags client_id so that every later message from it gets DISCONNECT.

        Operator hook: analyze() itself never scores above medium, so DISCONNECT is only
        reached for senders reported through this method.
        """
        logging.warning(f"Moderation: client '{client_id}' reported: {reason}")
        self._reported.add(client_id)

    def is_user_blocked(self, client_id):
        return client_id in self._reported

    def connection_warnings(self, client_id):
        activity = self._activity.get(client_id)
        return activity['warnings'] if activity else 0

    def forget(self, client_id):
        # Client ids are never reused, so reported ids can stay in the set.
        self._activity.pop(client_id, None)
