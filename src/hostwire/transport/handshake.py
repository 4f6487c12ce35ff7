"""Channel handshake.

Sequence (per connection):
    agent  → Challenge(nonce, salt, iterations)
    client → Auth(channel, proof=HMAC(key, channel || nonce), session_id)
    agent  → Welcome(session_id) | AuthFailed(reason)

The key is PBKDF2(token, salt, iterations); both sides derive it, so the
token itself never crosses the wire. After Welcome every record on the
channel is sealed with that key.

The control channel sends an empty session_id and learns the id from
Welcome; the bulk channel must echo that id so the agent can pair it
with its control channel.
"""

from __future__ import annotations

import asyncio
import secrets
from typing import Callable, Optional

import structlog

from hostwire.core.exceptions import AuthError, NetworkError, ProtocolError
from hostwire.core.keystore import (
    MAX_ITERATIONS,
    MIN_ITERATIONS,
    ChannelCipher,
    auth_proof,
    derive_key,
    generate_challenge,
    generate_salt,
    verify_proof,
)
from hostwire.transport.channel import Channel
from hostwire.wire.messages import Auth, AuthFailed, Challenge, Welcome


log = structlog.get_logger()


async def authenticate(
    channel: Channel,
    token: str,
    session_id: str = "",
    *,
    timeout: Optional[float] = None,
) -> str:
    """Run the client side of the handshake and enable sealing.

    Returns:
        The session id assigned by the agent.

    Raises:
        AuthError: If the agent rejects the proof.
        NetworkError: (terminal) If the connection fails mid-handshake.
        ProtocolError: (fatal) If the agent sends an unexpected frame or
            a PBKDF2 iteration count outside MIN_ITERATIONS..MAX_ITERATIONS.
    """
    try:
        challenge = await channel.receive_frame(timeout)
        if isinstance(challenge, AuthFailed):
            raise AuthError(channel.endpoint, challenge.reason)
        if not isinstance(challenge, Challenge):
            raise ProtocolError(
                f"expected challenge, got {type(challenge).__name__}", fatal=True
            )
        if not MIN_ITERATIONS <= challenge.iterations <= MAX_ITERATIONS:
            raise ProtocolError(
                f"challenge asks for {challenge.iterations} PBKDF2 iterations, "
                f"outside {MIN_ITERATIONS}..{MAX_ITERATIONS}",
                fatal=True,
            )

        key = await asyncio.to_thread(derive_key, token, challenge.salt, challenge.iterations)
        proof = auth_proof(key, channel.name, challenge.nonce)
        await channel.send_frame(Auth(channel=channel.name, proof=proof, session_id=session_id))

        reply = await channel.receive_frame(timeout)
    except NetworkError as e:
        raise NetworkError(
            channel.endpoint, f"handshake failed: {e.reason}", transient=False
        ) from e

    if isinstance(reply, AuthFailed):
        log.warning("auth_rejected", channel=channel.name, endpoint=channel.endpoint, reason=reply.reason)
        raise AuthError(channel.endpoint, reply.reason)
    if not isinstance(reply, Welcome):
        raise ProtocolError(f"expected welcome, got {type(reply).__name__}", fatal=True)
    if session_id and reply.session_id != session_id:
        raise ProtocolError(
            f"agent paired {channel.name} channel with session {reply.session_id!r}, "
            f"expected {session_id!r}",
            fatal=True,
        )

    channel.enable_encryption(ChannelCipher(key, channel.name))
    log.debug("channel_authenticated", channel=channel.name, endpoint=channel.endpoint)
    return reply.session_id


async def accept(
    channel: Channel,
    token: str,
    iterations: int,
    *,
    timeout: Optional[float] = None,
    session_check: Optional[Callable[[str], bool]] = None,
) -> str:
    """Run the agent side of the handshake and enable sealing.

    Args:
        channel: Freshly accepted connection.
        token: Shared auth token.
        iterations: PBKDF2 iteration count announced in the challenge.
        timeout: Seconds to wait for the client's Auth frame.
        session_check: For the bulk channel, returns True if the echoed
            session id belongs to a live control channel. None on control.

    Returns:
        The session id (newly minted on control, echoed on bulk).

    Raises:
        AuthError: If the proof or session id is rejected (AuthFailed is sent first).
    """
    nonce = generate_challenge()
    salt = generate_salt()
    await channel.send_frame(Challenge(nonce=nonce, salt=salt, iterations=iterations))

    frame = await channel.receive_frame(timeout)
    if not isinstance(frame, Auth):
        raise ProtocolError(f"expected auth, got {type(frame).__name__}", fatal=True)

    key = await asyncio.to_thread(derive_key, token, salt, iterations)

    reason: Optional[str] = None
    if frame.channel != channel.name:
        reason = f"auth for channel '{frame.channel}' sent on '{channel.name}'"
    elif not verify_proof(key, channel.name, nonce, frame.proof):
        reason = "invalid credentials"
    elif session_check is not None and not session_check(frame.session_id):
        reason = "unknown session"

    if reason is not None:
        await channel.send_frame(AuthFailed(reason=reason))
        raise AuthError(channel.endpoint, reason)

    session_id = frame.session_id if session_check is not None else secrets.token_hex(8)
    await channel.send_frame(Welcome(session_id=session_id))
    channel.enable_encryption(ChannelCipher(key, channel.name))
    return session_id
