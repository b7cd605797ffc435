"""
EIP-712 commitments built from accepted negotiation terms.

The digest is the EIP-712 signing hash of the typed data, so the same
commitment can be verified by an EVM contract.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from typing import Any, Mapping, Union

from eth_account.messages import encode_typed_data
from eth_utils import keccak

from .negotiation import Acceptance, Commitment, CounterOffer, Offer
from .signing import Signer


COMMITMENT_DOMAIN_NAME = "AccordCommitment"
COMMITMENT_DOMAIN_VERSION = "1"
COMMITMENT_PRIMARY_TYPE = "Commitment"

COMMITMENT_TYPE_FIELDS: tuple[dict[str, str], ...] = (
    {"name": "buyerAgent", "type": "string"},
    {"name": "sellerAgent", "type": "string"},
    {"name": "item", "type": "string"},
    {"name": "price", "type": "string"},
    {"name": "currency", "type": "string"},
    {"name": "deliveryDeadline", "type": "uint256"},
    {"name": "arbitrator", "type": "string"},
    {"name": "escrowRequired", "type": "bool"},
    {"name": "agreementHash", "type": "string"},
    {"name": "nonce", "type": "uint256"},
)

# 53 bits keeps the nonce exact in JSON consumers that parse numbers as doubles.
_NONCE_BITS = 53


@dataclass(frozen=True)
class CommitmentTerms:
    """Settlement details the negotiation itself does not carry."""

    buyer_agent: str
    seller_agent: str
    chain_id: int
    delivery_deadline: int
    arbitrator: str = ""
    escrow_required: bool = False

    def __post_init__(self) -> None:
        if self.chain_id < 0:
            raise ValueError("chain_id must be a non-negative integer")
        if self.delivery_deadline < 0:
            raise ValueError("delivery_deadline must be a non-negative Unix timestamp")


def commitment_digest(
    domain: Mapping[str, Any],
    types: Mapping[str, Any],
    value: Mapping[str, Any],
) -> str:
    """Compute the EIP-712 signing hash."""
    signable = encode_typed_data(dict(domain), dict(types), dict(value))
    digest = keccak(b"\x19" + signable.version + signable.header + signable.body)
    return "0x" + digest.hex()


def build_commitment(
    terms_payload: Union[Offer, CounterOffer],
    acceptance: Acceptance,
    settlement: CommitmentTerms,
    proposer: str,
    nonce: int | None = None,
) -> Commitment:
    """Create an unsigned commitment for the accepted terms."""
    domain = {
        "name": COMMITMENT_DOMAIN_NAME,
        "version": COMMITMENT_DOMAIN_VERSION,
        "chainId": settlement.chain_id,
    }
    types = {COMMITMENT_PRIMARY_TYPE: [dict(f) for f in COMMITMENT_TYPE_FIELDS]}
    value = {
        "buyerAgent": settlement.buyer_agent,
        "sellerAgent": settlement.seller_agent,
        "item": terms_payload.item,
        "price": acceptance.accepted_price,
        "currency": terms_payload.currency,
        "deliveryDeadline": settlement.delivery_deadline,
        "arbitrator": settlement.arbitrator,
        "escrowRequired": settlement.escrow_required,
        "agreementHash": acceptance.agreement_hash,
        "nonce": secrets.randbits(_NONCE_BITS) if nonce is None else int(nonce),
    }
    return Commitment(
        domain=domain,
        types=types,
        primary_type=COMMITMENT_PRIMARY_TYPE,
        value=value,
        digest=commitment_digest(domain, types, value),
        proposer=proposer,
    )


def sign_commitment(commitment: Commitment, signer: Signer, key_ref: str) -> Commitment:
    return replace(commitment, proposer_signature=signer.sign(key_ref, commitment.digest))


def verify_commitment_digest(commitment: Commitment) -> bool:
    """True if the stored digest matches the typed data."""
    try:
        expected = commitment_digest(commitment.domain, commitment.types, commitment.value)
    except Exception:
        return False
    return expected == commitment.digest
