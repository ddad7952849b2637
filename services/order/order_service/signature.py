"""
Order Service — Webhook 署名検証

signature = SHA512(order_ref + status_code + gross_amount + server_key) の hex。
比較は hmac.compare_digest で定数時間に行う。
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


class SignatureVerifier:
    def __init__(self, server_key: str, enabled: bool = True) -> None:
        self._server_key = server_key
        self.enabled = enabled
        if not enabled:
            logger.warning(
                "Webhook signature verification is DISABLED. "
                "Every webhook body will be trusted as-is; never run this in production."
            )

    def compute(self, order_ref: str, status_code: str, gross_amount: str) -> str:
        payload = f"{order_ref}{status_code}{gross_amount}{self._server_key}"
        return hashlib.sha512(payload.encode("utf-8")).hexdigest()

    def verify(
        self,
        order_ref: str,
        status_code: str,
        gross_amount: str,
        provided_signature: str | None,
    ) -> bool:
        if not self.enabled:
            logger.warning("Accepting unverified webhook for %s (verification disabled)", order_ref)
            return True
        if not provided_signature:
            return False
        expected = self.compute(order_ref, status_code, gross_amount)
        return hmac.compare_digest(expected.encode("ascii"), provided_signature.strip().lower().encode("utf-8"))
