"""
Signed, time-boxed OAuth ``state`` values.

A state binds the authenticated user and the requested platform to
the consent redirect so the callback can reject forged or stale links (CSRF).
Nothing is persisted: the payload is carried in the URL and authenticated with
an HMAC.
"""
import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..utils.helpers import utcnow
from ..utils.logger import logger


@dataclass
class StateDecodeResult:
    """Outcome of decoding a state value. ``reason`` explains an invalid one."""

    valid: bool
    user_id: Optional[str] = None
    label: Optional[str] = None
    platform: Optional[str] = None
    issued_at: Optional[datetime] = None
    nonce: Optional[str] = None
    reason: Optional[str] = None


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class StateCodec:
    """Encode and verify OAuth state values."""

    def __init__(
        self,
        secret: str,
        ttl_minutes: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            secret: Key used to sign state payloads
            ttl_minutes: Freshness window; older states are rejected
            clock: Source of the current time (overridable in tests)
        """
        if not secret:
            raise ValueError("State secret must not be empty")
        self._key = secret.encode()
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock
        # nonce -> time after which the entry can be forgotten
        self._consumed: Dict[str, datetime] = {}

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._key, payload.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def encode(self, user_id, label: str) -> str:
        """
        Pack user id, label, issue time and a random nonce into a signed string.

        Args:
            user_id: Authenticated caller
            label: Platform id the state was issued for; it must match the
                ``platform:`` prefix the state is sent with

        Returns:
            Opaque URL-safe string (contains no ``:``)
        """
        issued_ms = int(self._clock().timestamp() * 1000)
        body = json.dumps(
            {"u": str(user_id), "l": label, "t": issued_ms, "n": secrets.token_urlsafe(8)},
            separators=(",", ":"),
        )
        payload = _b64encode(body.encode("utf-8"))
        return f"{payload}.{self._sign(payload)}"

    def decode(self, state: Optional[str], expected_user_id) -> StateDecodeResult:
        """
        Verify a state value from a callback. Never raises.

        Args:
            state: Raw ``state`` query parameter, ``"{platform}:{encoded}"``
            expected_user_id: The caller completing the callback

        Returns:
            StateDecodeResult; ``valid`` is False on any parse, signature,
            platform, user or freshness failure
        """
        if not state or not isinstance(state, str):
            return StateDecodeResult(valid=False, reason="missing state")

        if ":" not in state:
            return StateDecodeResult(valid=False, reason="missing platform prefix")
        platform, encoded = state.split(":", 1)

        try:
            payload, signature = encoded.split(".", 1)
            if not hmac.compare_digest(signature, self._sign(payload)):
                return StateDecodeResult(valid=False, platform=platform, reason="bad signature")
            data = json.loads(_b64decode(payload).decode("utf-8"))
            user_id = str(data["u"])
            label = data["l"]
            issued_at = datetime.fromtimestamp(int(data["t"]) / 1000, tz=timezone.utc)
            nonce = data["n"]
        except (ValueError, KeyError, TypeError, OverflowError, OSError) as e:
            return StateDecodeResult(valid=False, platform=platform, reason=f"malformed state: {e}")

        result = StateDecodeResult(
            valid=False,
            user_id=user_id,
            label=label,
            platform=platform,
            issued_at=issued_at,
            nonce=nonce,
        )
        # The prefix is not signed; the label inside the payload is
        if platform != label:
            result.reason = "platform mismatch"
            return result
        if user_id != str(expected_user_id):
            result.reason = "user mismatch"
            return result
        if issued_at <= self._clock() - self.ttl:
            result.reason = "state expired"
            return result

        result.valid = True
        return result

    def consume(self, state: Optional[str], expected_user_id) -> StateDecodeResult:
        """
        Decode a state and burn its nonce so the same link cannot be replayed.

        Returns:
            The decode result; a second call with the same state is invalid
        """
        result = self.decode(state, expected_user_id)
        if not result.valid:
            logger.warning(f"Rejected OAuth state for user {expected_user_id}: {result.reason}")
            return result

        now = self._clock()
        self._consumed = {n: until for n, until in self._consumed.items() if until > now}
        if result.nonce in self._consumed:
            logger.warning(f"Replayed OAuth state for user {expected_user_id}")
            result.valid = False
            result.reason = "state already used"
            return result

        self._consumed[result.nonce] = result.issued_at + self.ttl
        return result
