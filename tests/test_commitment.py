"""Tests for EIP-712 commitments."""

from dataclasses import replace

import pytest

from accord.commitment import (
    COMMITMENT_DOMAIN_NAME,
    CommitmentTerms,
    build_commitment,
    commitment_digest,
    sign_commitment,
    verify_commitment_digest,
)
from accord.negotiation import Acceptance, CounterOffer, Offer, agreement_hash
from accord.signing import LocalKeySigner, verify_signature


OFFER = Offer(item="gpu-hours", price="120", currency="USDC", terms=("net-30",))
SETTLEMENT = CommitmentTerms(
    buyer_agent="alice",
    seller_agent="bob",
    chain_id=8453,
    delivery_deadline=1_800_000_000,
)


def make_acceptance(payload=OFFER):
    terms = payload.normalized_terms()
    return Acceptance(agreement_hash=agreement_hash(payload), accepted_price=terms["price"])


class TestBuildCommitment:
    def test_fields_come_from_accepted_terms(self):
        commitment = build_commitment(OFFER, make_acceptance(), SETTLEMENT, proposer="alice", nonce=7)
        assert commitment.domain == {"name": COMMITMENT_DOMAIN_NAME, "version": "1", "chainId": 8453}
        assert commitment.value["price"] == "120"
        assert commitment.value["item"] == "gpu-hours"
        assert commitment.value["agreementHash"] == agreement_hash(OFFER)
        assert commitment.value["nonce"] == 7
        assert commitment.proposer == "alice"
        assert commitment.proposer_signature is None

    def test_counter_offer_price(self):
        counter = CounterOffer(item="gpu-hours", counter_price="95", currency="USDC")
        commitment = build_commitment(counter, make_acceptance(counter), SETTLEMENT, proposer="bob", nonce=1)
        assert commitment.value["price"] == "95"

    def test_digest_is_deterministic_for_fixed_nonce(self):
        a = build_commitment(OFFER, make_acceptance(), SETTLEMENT, proposer="alice", nonce=42)
        b = build_commitment(OFFER, make_acceptance(), SETTLEMENT, proposer="alice", nonce=42)
        assert a.digest == b.digest
        assert a.digest.startswith("0x") and len(a.digest) == 66

    def test_random_nonce_fits_in_53_bits(self):
        for _ in range(20):
            commitment = build_commitment(OFFER, make_acceptance(), SETTLEMENT, proposer="alice")
            assert 0 <= commitment.value["nonce"] < 2**53

    def test_negative_chain_id_rejected(self):
        with pytest.raises(ValueError):
            CommitmentTerms(buyer_agent="a", seller_agent="b", chain_id=-1, delivery_deadline=0)


class TestDigestAndSignature:
    def test_verify_detects_tampering(self):
        commitment = build_commitment(OFFER, make_acceptance(), SETTLEMENT, proposer="alice", nonce=3)
        assert verify_commitment_digest(commitment)
        tampered = replace(commitment, value={**commitment.value, "price": "1"})
        assert not verify_commitment_digest(tampered)

    def test_digest_changes_with_domain(self):
        commitment = build_commitment(OFFER, make_acceptance(), SETTLEMENT, proposer="alice", nonce=3)
        other_chain = {**commitment.domain, "chainId": 1}
        assert commitment_digest(other_chain, commitment.types, commitment.value) != commitment.digest

    def test_signature_covers_digest(self):
        signer = LocalKeySigner()
        address = signer.create_key("alice")
        commitment = build_commitment(OFFER, make_acceptance(), SETTLEMENT, proposer="alice", nonce=3)
        signed = sign_commitment(commitment, signer, "alice")
        assert verify_signature(address, signed.digest, signed.proposer_signature)
