# nttattest_guest.py
"""
nttattest guest: prove that an NTT manager emitted a TransferSent event in a
committed Ethereum block.

The guest:
  - Reads a framed input stream: state-proof bundle, 20-byte contract address, u32 log index
  - Reconstructs a VerifiedView of the block from the bundle and a chain specification
  - Queries the TransferSent(bytes32 indexed digest) events of the contract
  - Picks the occurrence at the requested log index
  - Commits {Commitment, message digest, wormhole-encoded emitter} as an ABI-encoded journal

The journal bytes are the only output. Any failure raises and no journal exists.
"""

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi import exceptions as abi_exceptions
from web3 import Web3

from nttattest_errors import EncodingError, EventNotFoundError, InputDecodingError
from nttattest_view import (
    ETH_MAINNET_CHAIN_SPEC,
    ChainSpec,
    Commitment,
    Log,
    VerifiedView,
    reconstruct_view,
)

ADDRESS_SIZE = 20
UNIVERSAL_ADDRESS_SIZE = 32
U32_MAX = 2**32 - 1

JOURNAL_ABI_TYPE = "((uint256,bytes32,bytes32),bytes32,bytes32)"
JOURNAL_SIZE = 5 * 32

JOURNAL_SCHEMA = """\
/// @notice Block commitment: id = version << 240 | block number.
struct Commitment {
    uint256 id;
    bytes32 digest;
    bytes32 configID;
}

/// @notice Journal that is committed to by the guest.
struct Journal {
    // Locks this proof to a specific block
    Commitment commitment;
    // The NTT manager message that was sent
    bytes32 nttManagerMessageDigest;
    // The NTT manager that emitted the message (wormhole encoded address)
    bytes32 emitterNttManager;
}
"""


# ---------------------------------------------------------------------------
# Input channel
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GuestInput:
    bundle: bytes
    address: bytes
    log_index: int


def write_input(bundle: bytes, address: bytes, log_index: int) -> bytes:
    """Frame the guest inputs: u32 LE bundle length, bundle, address, u32 LE log index."""
    if len(address) != ADDRESS_SIZE:
        raise InputDecodingError(f"Address must be {ADDRESS_SIZE} bytes, got {len(address)}")
    if not 0 <= log_index <= U32_MAX:
        raise InputDecodingError(f"Log index must fit in u32, got {log_index}")
    if len(bundle) > U32_MAX:
        raise InputDecodingError("State-proof bundle is too large to frame")
    return struct.pack("<I", len(bundle)) + bundle + address + struct.pack("<I", log_index)


def read_input(stream: bytes) -> GuestInput:
    offset = 0

    def take(size: int, what: str) -> bytes:
        nonlocal offset
        if len(stream) - offset < size:
            raise InputDecodingError(
                f"Truncated input: {what} needs {size} bytes, {len(stream) - offset} left"
            )
        chunk = stream[offset : offset + size]
        offset += size
        return chunk

    (bundle_len,) = struct.unpack("<I", take(4, "bundle length"))
    bundle = take(bundle_len, "bundle")
    address = take(ADDRESS_SIZE, "contract address")
    (log_index,) = struct.unpack("<I", take(4, "log index"))

    if offset != len(stream):
        raise InputDecodingError(f"{len(stream) - offset} trailing bytes after log index")
    return GuestInput(bundle=bundle, address=address, log_index=log_index)


# ---------------------------------------------------------------------------
# Event selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventParam:
    name: str
    abi_type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventRecord:
    digest: bytes
    address: bytes
    tx_index: int
    log_index: int


@dataclass(frozen=True)
class EventSignature:
    """One declared event: its topic0, its exact shape and the field used as content digest."""

    contract: str
    name: str
    params: Tuple[EventParam, ...]
    digest_param: str

    @property
    def canonical(self) -> str:
        return f"{self.name}({','.join(p.abi_type for p in self.params)})"

    @property
    def topic0(self) -> bytes:
        return bytes(Web3.keccak(text=self.canonical))

    @property
    def indexed(self) -> Tuple[EventParam, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def unindexed(self) -> Tuple[EventParam, ...]:
        return tuple(p for p in self.params if not p.indexed)

    def decode(self, log: Log) -> Optional[Dict[str, Any]]:
        """Decode a log of exactly this shape; return None if the log does not match it.

        Same topic0 is not enough: the topic count must equal 1 + indexed params
        and the data must be the canonical encoding of the unindexed params.
        """
        if not log.topics or log.topics[0] != self.topic0:
            return None
        if len(log.topics) != 1 + len(self.indexed):
            return None

        types = [p.abi_type for p in self.unindexed]
        try:
            values = abi_decode(types, log.data)
            indexed = [
                _decode_topic(param.abi_type, topic)
                for param, topic in zip(self.indexed, log.topics[1:])
            ]
        except abi_exceptions.DecodingError:
            return None
        if abi_encode(types, values) != log.data:
            return None

        decoded = dict(zip((p.name for p in self.unindexed), values))
        decoded.update(zip((p.name for p in self.indexed), indexed))
        return decoded

    def to_record(self, log: Log, decoded: Dict[str, Any]) -> EventRecord:
        return EventRecord(
            digest=decoded[self.digest_param],
            address=log.address,
            tx_index=log.tx_index,
            log_index=log.log_index,
        )


def _decode_topic(abi_type: str, topic: bytes) -> Any:
    # Dynamic indexed values are stored as their keccak hash.
    if abi_type in ("string", "bytes") or abi_type.endswith("]"):
        return topic
    return abi_decode([abi_type], topic)[0]


# INttManager.TransferSent, topic0 0x3e6ae56314c6da8b461d872f41c6d0bb69317b9d0232805aaccfa45df1a16fa0
TRANSFER_SENT = EventSignature(
    contract="INttManager",
    name="TransferSent",
    params=(EventParam("digest", "bytes32", indexed=True),),
    digest_param="digest",
)


def query_events(view: VerifiedView, signature: EventSignature, address: bytes) -> List[EventRecord]:
    """All events of `signature` emitted by `address` in the view's block, in emission order."""
    records = []
    for log in view.logs_from(address):
        decoded = signature.decode(log)
        if decoded is not None:
            records.append(signature.to_record(log, decoded))
    return records


def select_event(records: List[EventRecord], log_index: int) -> EventRecord:
    if log_index < 0 or log_index >= len(records):
        raise EventNotFoundError(
            f"Log index {log_index} out of range: {len(records)} matching event(s)"
        )
    return records[log_index]


# ---------------------------------------------------------------------------
# Address canonicalization
# ---------------------------------------------------------------------------


def to_universal_address(address: bytes) -> bytes:
    """Left-pad a 20-byte EVM address with zeros into a 32-byte universal address."""
    if len(address) != ADDRESS_SIZE:
        raise ValueError(f"Expected a {ADDRESS_SIZE}-byte address, got {len(address)} bytes")
    return bytes(address).rjust(UNIVERSAL_ADDRESS_SIZE, b"\x00")


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Journal:
    commitment: Commitment
    digest: bytes
    emitter: bytes

    def as_abi(self) -> Tuple[Tuple[int, bytes, bytes], bytes, bytes]:
        c = self.commitment
        return ((c.id, c.digest, c.config_id), self.digest, self.emitter)

    def to_dict(self) -> Dict[str, Any]:
        c = self.commitment
        return {
            "commitment": {
                "id": c.id,
                "version": c.version,
                "blockNumber": c.block_number,
                "digest": Web3.to_hex(c.digest),
                "configID": Web3.to_hex(c.config_id),
            },
            "nttManagerMessageDigest": Web3.to_hex(self.digest),
            "emitterNttManager": Web3.to_hex(self.emitter),
        }


def encode_journal(journal: Journal) -> bytes:
    c = journal.commitment
    for name, value in (
        ("commitment.digest", c.digest),
        ("commitment.configID", c.config_id),
        ("nttManagerMessageDigest", journal.digest),
        ("emitterNttManager", journal.emitter),
    ):
        # eth_abi right-pads short bytes32 values; refuse them instead.
        if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
            raise EncodingError(f"Journal field {name} must be 32 bytes")
    try:
        encoded = abi_encode([JOURNAL_ABI_TYPE], [journal.as_abi()])
    except abi_exceptions.EncodingError as e:
        raise EncodingError(f"Journal does not fit {JOURNAL_ABI_TYPE}: {e}")
    if len(encoded) != JOURNAL_SIZE:
        raise EncodingError(f"Encoded journal is {len(encoded)} bytes, expected {JOURNAL_SIZE}")
    return encoded


def decode_journal(blob: bytes) -> Journal:
    if len(blob) != JOURNAL_SIZE:
        raise EncodingError(f"Journal must be {JOURNAL_SIZE} bytes, got {len(blob)}")
    try:
        ((commitment_id, digest, config_id), message_digest, emitter) = abi_decode(
            [JOURNAL_ABI_TYPE], blob
        )[0]
    except abi_exceptions.DecodingError as e:
        raise EncodingError(f"Journal does not match {JOURNAL_ABI_TYPE}: {e}")
    return Journal(
        commitment=Commitment(id=commitment_id, digest=digest, config_id=config_id),
        digest=message_digest,
        emitter=emitter,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_guest(stream: bytes, chain_spec: ChainSpec = ETH_MAINNET_CHAIN_SPEC) -> bytes:
    """Run the attestation over one framed input stream and return the journal bytes."""
    guest_input = read_input(stream)
    view = reconstruct_view(guest_input.bundle, chain_spec)

    records = query_events(view, TRANSFER_SENT, guest_input.address)
    record = select_event(records, guest_input.log_index)

    journal = Journal(
        commitment=view.commitment,
        digest=record.digest,
        emitter=to_universal_address(guest_input.address),
    )
    return encode_journal(journal)
