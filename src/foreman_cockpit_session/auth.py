"""
Authorization exchange on the control channel.

The front end is asked for credentials with a wildcard challenge and answers
with ``"<scheme> <token>"``. Only the token is kept; it is the Foreman session
id used to query the directory service.
"""

import enum
import logging
import secrets

from .control import ChallengeFrame, ControlChannel, ResponseFrame
from .errors import ProtocolError

logger = logging.getLogger(__name__)

WILDCARD_CHALLENGE = "*"


class AuthState(enum.Enum):
    AWAITING_RESPONSE = "awaiting-response"
    DONE = "done"


def extract_token(response: str) -> str:
    """Extract the token from a ``"<scheme> <token>"`` response string."""
    fields = response.split()
    if len(fields) < 2:
        raise ProtocolError("invalid authorize response: missing token")
    return fields[1]


class AuthHandshake:
    """Challenge/response exchange; a malformed reply is fatal, no retries."""

    def __init__(self, channel: ControlChannel):
        self.channel = channel
        self.state = AuthState.AWAITING_RESPONSE

    def run(self) -> str:
        """Run the exchange and return the bearer token."""
        if self.state is not AuthState.AWAITING_RESPONSE:
            raise ProtocolError("authorization already completed")

        # The cookie is opaque to both sides but the front end requires it
        cookie = secrets.token_hex(8)
        self.channel.send(ChallengeFrame(cookie=cookie, challenge=WILDCARD_CHALLENGE))

        frame = self.channel.read()
        if not isinstance(frame, ResponseFrame) or not frame.response:
            raise ProtocolError("did not receive a valid authorize command")
        if not isinstance(frame.response, str):
            raise ProtocolError("invalid authorize response: not a string")

        token = extract_token(frame.response)
        self.state = AuthState.DONE
        logger.debug("Authorization response received")
        return token


def authorize(channel: ControlChannel) -> str:
    """Convenience wrapper: run one auth handshake on ``channel``."""
    return AuthHandshake(channel).run()
