"""Device-authenticated connect handshake.

Implements the client side of the gateway handshake:
1. Gateway -> Client: event connect.challenge { nonce }
2. Client -> Gateway: req connect { client, auth, role, scopes, device }
3. Gateway -> Client: res connect { server, auth { scopes } }

The device block carries a signature over the canonical auth payload, which
binds the session to this process's ephemeral device identity.
"""

import logging
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sidecar.channel import ChannelProtocol
from sidecar.config import ClientConfig, TimeoutsConfig
from sidecar.errors import AuthDeniedError, HandshakeError
from sidecar.identity import DeviceIdentity
from sidecar.rpc import RpcClient

logger = logging.getLogger(__name__)

CHALLENGE_EVENT = "connect.challenge"
CONNECT_METHOD = "connect"


class HandshakeState(Enum):
    """State of the connect handshake."""

    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


def build_auth_payload(
    *,
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: list[str],
    signed_at_ms: int,
    token: Optional[str] = None,
    nonce: Optional[str] = None,
) -> str:
    """Build the canonical string the device signs.

    Format (pipe-delimited, order is part of the wire contract):
        v2|deviceId|clientId|clientMode|role|scopes|signedAtMs|token|nonce
        v1|deviceId|clientId|clientMode|role|scopes|signedAtMs|token

    v2 is used whenever a nonce is given; v1 omits the nonce field.
    """
    version = "v2" if nonce else "v1"
    parts = [
        version,
        device_id,
        client_id,
        client_mode,
        role,
        ",".join(scopes),
        str(signed_at_ms),
        token or "",
    ]
    if version == "v2":
        parts.append(nonce)
    return "|".join(parts)


@dataclass(frozen=True)
class Session:
    """Result of a connect exchange."""

    scopes: list[str] = field(default_factory=list)
    server_version: Optional[str] = None
    hello: dict[str, Any] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        """A session without granted scopes must not be used."""
        return bool(self.scopes)

    @classmethod
    def from_hello(cls, hello: Any) -> "Session":
        """Build a session from the connect response payload."""
        if not isinstance(hello, dict):
            return cls()
        auth = hello.get("auth") or {}
        server = hello.get("server") or {}
        scopes = auth.get("scopes") if isinstance(auth, dict) else None
        version = server.get("version") if isinstance(server, dict) else None
        return cls(
            scopes=list(scopes) if isinstance(scopes, list) else [],
            server_version=version,
            hello=hello,
        )


class Handshake:
    """Drives a channel from connect to an authenticated session.

    Transitions:
        CONNECTING -> AWAITING_CHALLENGE -> AUTHENTICATING -> AUTHENTICATED
    Any failure moves to FAILED, which is terminal.
    """

    def __init__(
        self,
        channel: ChannelProtocol,
        rpc: RpcClient,
        identity: DeviceIdentity,
        token: str,
        client: Optional[ClientConfig] = None,
        timeouts: Optional[TimeoutsConfig] = None,
        clock: Callable[[], float] = time.time,
        platform: str = sys.platform,
    ):
        """Initialize handshake.

        Args:
            channel: Unopened gateway channel.
            rpc: RPC client already subscribed to channel.
            identity: Device identity used to sign the auth payload.
            token: Gateway bearer token.
            client: Client descriptor, role and scopes.
            timeouts: Challenge and connect wait bounds.
            clock: Time source in seconds (for testing).
            platform: Platform name reported in the client descriptor.
        """
        self._channel = channel
        self._rpc = rpc
        self._identity = identity
        self._token = token
        self._client = client or ClientConfig()
        self._timeouts = timeouts or TimeoutsConfig()
        self._clock = clock
        self._platform = platform
        self._state = HandshakeState.CONNECTING
        self.session: Optional[Session] = None

    @property
    def state(self) -> HandshakeState:
        return self._state

    async def run(self) -> Session:
        """Run the handshake.

        Returns:
            An authenticated session.

        Raises:
            ChannelError: If the connection cannot be opened.
            RpcTimeoutError: If the challenge or connect response is late.
            RpcError: If the gateway rejects connect.
            HandshakeError: If the challenge is unusable.
            AuthDeniedError: If connect grants no scopes.
        """
        try:
            return await self._run()
        except BaseException:
            self._set_state(HandshakeState.FAILED)
            raise

    async def _run(self) -> Session:
        self._set_state(HandshakeState.CONNECTING)

        # Arm before opening: the gateway may send the challenge immediately.
        challenge_waiter = self._rpc.expect_event(CHALLENGE_EVENT)
        try:
            await self._channel.open()
        except BaseException:
            challenge_waiter.cancel()
            raise

        self._set_state(HandshakeState.AWAITING_CHALLENGE)
        logger.info("Connected. Waiting for challenge...")
        challenge = await challenge_waiter.wait(self._timeouts.challenge)

        nonce = challenge.get("nonce") if isinstance(challenge, dict) else None
        if not isinstance(nonce, str) or not nonce:
            raise HandshakeError("Challenge did not carry a nonce")
        logger.info(f"Got challenge, nonce: {nonce}")

        self._set_state(HandshakeState.AUTHENTICATING)
        params = self.build_connect_params(nonce)
        request_id = await self._rpc.send(CONNECT_METHOD, params)
        hello = await self._rpc.await_response(request_id, self._timeouts.connect)

        session = Session.from_hello(hello)
        logger.info(f"Authenticated! Server version: {session.server_version}")
        logger.info(f"Auth scopes: {', '.join(session.scopes) or 'none'}")

        if not session.is_authenticated:
            logger.error("No scopes granted - loopback auto-pairing may have failed")
            await self._channel.close()
            raise AuthDeniedError("Gateway granted no scopes")

        self.session = session
        self._set_state(HandshakeState.AUTHENTICATED)
        return session

    def build_connect_params(self, nonce: str) -> dict[str, Any]:
        """Build signed connect params for the given challenge nonce."""
        client = self._client
        signed_at_ms = int(self._clock() * 1000)
        payload = build_auth_payload(
            device_id=self._identity.device_id,
            client_id=client.client_id,
            client_mode=client.mode,
            role=client.role,
            scopes=client.scopes,
            signed_at_ms=signed_at_ms,
            token=self._token,
            nonce=nonce,
        )
        signature = self._identity.sign(payload)

        return {
            "minProtocol": client.min_protocol,
            "maxProtocol": client.max_protocol,
            "client": {
                "id": client.client_id,
                "displayName": client.display_name,
                "version": client.version,
                "platform": self._platform,
                "mode": client.mode,
            },
            "auth": {"token": self._token},
            "role": client.role,
            "scopes": list(client.scopes),
            "device": {
                "id": self._identity.device_id,
                "publicKey": self._identity.public_key_b64url,
                "signature": signature,
                "signedAt": signed_at_ms,
                "nonce": nonce,
            },
        }

    def _set_state(self, state: HandshakeState) -> None:
        if self._state is HandshakeState.FAILED:
            return
        if state is not self._state:
            logger.debug(f"Handshake {self._state.value} -> {state.value}")
        self._state = state
