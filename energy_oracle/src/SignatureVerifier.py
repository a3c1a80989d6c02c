"""SignatureVerifier: Default provider attestation check.

A provider that declares a ``signer`` address signs the canonical reading
payload (see ``FeedFetcher.canonical_payload``) with EIP-191 personal_sign.
The verifier recovers the signing address and compares it with the
configured one. Any callable ``(payload, signature, provider_id) -> bool`` can
be injected into FeedFetcher instead.
"""

from __future__ import annotations

import logging

from eth_account import Account
from eth_account.messages import encode_defunct

from .ProviderRegistry import ProviderNotFoundError, ProviderRegistry

logger = logging.getLogger(__name__)


class EthSignatureVerifier:
    """Verifies EIP-191 signatures against each provider's configured signer.

    :ivar registry: Provider registry holding signer addresses.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    def __call__(self, payload: bytes, signature: str, provider_id: str) -> bool:
        """Check a provider signature.

        :param payload: Signed bytes.
        :param signature: Hex signature (with or without 0x prefix).
        :param provider_id: Provider that produced the payload.
        :returns: True if the recovered signer matches the configured one.
        """
        try:
            expected = self.registry.get(provider_id).signer
        except ProviderNotFoundError:
            logger.warning(f"[{provider_id}] Signature check for unknown provider")
            return False
        if not expected:
            return False

        try:
            recovered = Account.recover_message(encode_defunct(primitive=payload), signature=signature)
        except Exception as e:  # malformed signatures raise assorted errors
            logger.warning(f"[{provider_id}] Could not recover signer: {e}")
            return False

        if recovered.lower() != expected.lower():
            logger.warning(f"[{provider_id}] Signature from {recovered}, expected {expected}")
            return False
        return True


def sign_payload(payload: bytes, private_key: str) -> str:
    """Sign a payload the way a provider would (tests and provider tooling).

    :param payload: Bytes to sign.
    :param private_key: Hex private key.
    :returns: 0x-prefixed hex signature.
    """
    signed = Account.sign_message(encode_defunct(primitive=payload), private_key=private_key)
    return "0x" + signed.signature.hex().removeprefix("0x")
