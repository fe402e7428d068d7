"""Pytest fixtures for the NTT attestation guest."""
from __future__ import annotations

import pytest
from eth_abi import encode
from web3 import Web3

from factories import build_bundle, log_entry, receipt_entry
from nttattest_guest import TRANSFER_SENT, write_input

TRANSFER_TOPIC = bytes(Web3.keccak(text="Transfer(address,address,uint256)"))


@pytest.fixture
def ntt_address():
    return b"\xaa" * 20


@pytest.fixture
def other_address():
    return b"\xbb" * 20


@pytest.fixture
def digests():
    """D0, D1, D2 in emission order."""
    return [bytes(Web3.keccak(text=f"ntt-message-{i}")) for i in range(3)]


@pytest.fixture
def scenario_receipts(ntt_address, other_address, digests):
    """Five receipts; exactly three TransferSent(bytes32 indexed) logs come from the NTT manager.

    Decoys: the same event from another contract, an ERC-20 Transfer from the
    manager, a log sharing topic0 but with an unindexed digest, a log with an
    extra topic, and an empty receipt.
    """
    t0 = TRANSFER_SENT.topic0
    d0, d1, d2 = digests
    foreign = bytes(Web3.keccak(text="foreign"))
    return [
        receipt_entry([log_entry(other_address, [t0, foreign]), log_entry(ntt_address, [t0, d0])]),
        receipt_entry(
            [
                log_entry(
                    ntt_address,
                    [TRANSFER_TOPIC, b"\x00" * 12 + other_address, b"\x00" * 12 + ntt_address],
                    encode(["uint256"], [10**18]),
                ),
                log_entry(ntt_address, [t0, d1]),
            ],
            tx_type=0,
            gas=120_000,
        ),
        receipt_entry(
            [
                log_entry(ntt_address, [t0], foreign),
                log_entry(ntt_address, [t0, foreign, foreign]),
            ],
            gas=200_000,
        ),
        receipt_entry([], status=0, gas=230_000),
        receipt_entry([log_entry(ntt_address, [t0, d2])], tx_type=3, gas=300_000),
    ]


@pytest.fixture
def scenario_bundle(scenario_receipts):
    return build_bundle(scenario_receipts)


@pytest.fixture
def make_input(scenario_bundle, ntt_address):
    def _make(log_index, bundle=None, address=None):
        return write_input(
            scenario_bundle if bundle is None else bundle,
            ntt_address if address is None else address,
            log_index,
        )

    return _make
