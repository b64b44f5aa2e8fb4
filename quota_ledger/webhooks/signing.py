"""
Callback signing for the sandbox payment provider.

Security:
- HMAC-SHA256 signatures prevent tampering with the callback body
- Timestamp verification prevents replaying an old callback
- Constant-time comparison on verification

The live provider (Stripe) signs its own events and is verified with the
Stripe SDK instead.
"""

import hashlib
import hmac
import logging
import time

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Inspi-Signature"
TIMESTAMP_HEADER = "X-Inspi-Timestamp"


class CallbackSigner:
    """
    Signs and verifies payment callbacks with HMAC-SHA256.

    Signature format: "v1=<hex digest of '{timestamp}.{body}'>"
    """

    SIGNATURE_VERSION = "v1"
    TIMESTAMP_TOLERANCE_SECONDS = 300  # 5 minutes

    def __init__(self, secret: str):
        """
        Initialize callback signer.

        Args:
            secret: Shared secret configured on both sides (>= 32 characters)
        """
        if not secret or len(secret) < 32:
            raise ValueError("Callback secret must be at least 32 characters for security")

        self.secret = secret.encode("utf-8")

    def sign_payload(self, payload: bytes | str, timestamp: int | None = None) -> tuple[str, int]:
        """
        Sign a callback body.

        Returns:
            tuple: (signature, timestamp)
        """
        if timestamp is None:
            timestamp = int(time.time())
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        digest = hmac.new(
            self.secret,
            f"{timestamp}.".encode() + payload,
            hashlib.sha256,
        ).hexdigest()

        return f"{self.SIGNATURE_VERSION}={digest}", timestamp

    def verify_signature(
        self,
        payload: bytes | str,
        signature: str,
        timestamp: int,
        tolerance_seconds: int | None = None,
    ) -> bool:
        """
        Verify a callback signature.

        Args:
            payload: Raw callback body
            signature: Value of the X-Inspi-Signature header
            timestamp: Value of the X-Inspi-Timestamp header
            tolerance_seconds: Max age of signature (None = 5 minutes)

        Returns:
            bool: True if signature is valid and fresh

        Raises:
            ValueError: If signature format is invalid
        """
        if tolerance_seconds is None:
            tolerance_seconds = self.TIMESTAMP_TOLERANCE_SECONDS

        if "=" not in signature:
            raise ValueError("Invalid signature format (expected 'v1=...')")

        version, digest = signature.split("=", 1)
        if version != self.SIGNATURE_VERSION:
            logger.warning(f"Unsupported signature version: {version}")
            return False

        age_seconds = int(time.time()) - timestamp
        if age_seconds > tolerance_seconds:
            logger.warning(f"Signature expired: age={age_seconds}s, tolerance={tolerance_seconds}s")
            return False
        if age_seconds < -tolerance_seconds:
            logger.warning(f"Signature timestamp in future: skew={abs(age_seconds)}s")
            return False

        expected, _ = self.sign_payload(payload, timestamp)
        return hmac.compare_digest(digest, expected.split("=", 1)[1])

    def create_headers(self, payload: bytes | str, timestamp: int | None = None) -> dict[str, str]:
        """Headers a sandbox provider attaches to a callback POST."""
        signature, ts = self.sign_payload(payload, timestamp)
        return {
            SIGNATURE_HEADER: signature,
            TIMESTAMP_HEADER: str(ts),
            "Content-Type": "application/json",
        }
