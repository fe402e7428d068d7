# nttattest_view.py
"""
Verified execution view of a single Ethereum block.

A state-proof bundle is a JSON document carrying one execution-layer block
header and every receipt of that block:

    {
      "header":   {"parentHash": "0x..", "number": "0x..", ...},
      "receipts": [{"type": "0x2", "status": "0x1", "cumulativeGasUsed": "0x..",
                    "logsBloom": "0x..", "logs": [{"address": "0x..",
                    "topics": ["0x.."], "data": "0x"}]}]
    }

Reconstruction hashes the RLP-encoded header into the block hash, rebuilds the
receipts Merkle-Patricia trie and only accepts the receipts if the trie root
equals the header's receiptsRoot. Logs handed out by a VerifiedView are
therefore bound to the block named by its Commitment.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import rlp
from trie import HexaryTrie
from web3 import Web3

from nttattest_errors import ViewReconstructionError

# Commitment versions: the id field carries the version in its top 16 bits.
BLOCK_COMMITMENT_VERSION = 0
COMMITMENT_VERSION_SHIFT = 240

INT = "int"
BYTES = "bytes"

# (json key, kind) where kind is INT, BYTES or a fixed byte length.
PARIS_FIELDS: Tuple[Tuple[str, Any], ...] = (
    ("parentHash", 32),
    ("sha3Uncles", 32),
    ("miner", 20),
    ("stateRoot", 32),
    ("transactionsRoot", 32),
    ("receiptsRoot", 32),
    ("logsBloom", 256),
    ("difficulty", INT),
    ("number", INT),
    ("gasLimit", INT),
    ("gasUsed", INT),
    ("timestamp", INT),
    ("extraData", BYTES),
    ("mixHash", 32),
    ("nonce", 8),
    ("baseFeePerGas", INT),
)

FORK_FIELDS: Dict[str, Tuple[Tuple[str, Any], ...]] = {
    "Paris": PARIS_FIELDS,
    "Shanghai": PARIS_FIELDS + (("withdrawalsRoot", 32),),
}
FORK_FIELDS["Cancun"] = FORK_FIELDS["Shanghai"] + (
    ("blobGasUsed", INT),
    ("excessBlobGas", INT),
    ("parentBeaconBlockRoot", 32),
)
FORK_FIELDS["Prague"] = FORK_FIELDS["Cancun"] + (("requestsHash", 32),)


@dataclass(frozen=True)
class ChainSpec:
    """Consensus parameters of the target chain.

    Post-merge forks are activated by timestamp and listed in ascending order.
    """

    chain_id: int
    merge_block: int
    forks: Tuple[Tuple[str, int], ...]

    def active_fork(self, number: int, timestamp: int) -> str:
        if number < self.merge_block:
            raise ViewReconstructionError(
                f"Block {number} predates the merge (block {self.merge_block}) and is unsupported"
            )
        fork = "Paris"
        for name, activation in self.forks:
            if timestamp >= activation:
                fork = name
        return fork

    @property
    def config_id(self) -> bytes:
        encoded = rlp.encode(
            [
                self.chain_id,
                self.merge_block,
                [[name.encode(), activation] for name, activation in self.forks],
            ]
        )
        return bytes(Web3.keccak(encoded))


ETH_MAINNET_CHAIN_SPEC = ChainSpec(
    chain_id=1,
    merge_block=15_537_394,
    forks=(
        ("Shanghai", 1_681_338_455),
        ("Cancun", 1_710_338_135),
        ("Prague", 1_746_612_311),
    ),
)


@dataclass(frozen=True)
class Commitment:
    """Names one block: (version << 240 | block number, block hash, chain config id)."""

    id: int
    digest: bytes
    config_id: bytes

    @classmethod
    def for_block(cls, number: int, block_hash: bytes, chain_spec: ChainSpec) -> "Commitment":
        commitment_id = (BLOCK_COMMITMENT_VERSION << COMMITMENT_VERSION_SHIFT) | number
        return cls(id=commitment_id, digest=block_hash, config_id=chain_spec.config_id)

    @property
    def version(self) -> int:
        return self.id >> COMMITMENT_VERSION_SHIFT

    @property
    def block_number(self) -> int:
        return self.id & ((1 << COMMITMENT_VERSION_SHIFT) - 1)


@dataclass(frozen=True)
class Log:
    address: bytes
    topics: Tuple[bytes, ...]
    data: bytes
    tx_index: int
    log_index: int


@dataclass(frozen=True)
class Receipt:
    tx_type: int
    status: int
    cumulative_gas_used: int
    logs_bloom: bytes
    logs: Tuple[Tuple[bytes, Tuple[bytes, ...], bytes], ...]

    def encode(self) -> bytes:
        """EIP-2718 envelope: legacy receipts are bare RLP, typed ones get a type prefix."""
        payload = rlp.encode(
            [
                self.status,
                self.cumulative_gas_used,
                self.logs_bloom,
                [[address, list(topics), data] for address, topics, data in self.logs],
            ]
        )
        if self.tx_type == 0:
            return payload
        return bytes([self.tx_type]) + payload


@dataclass(frozen=True)
class VerifiedView:
    block_number: int
    block_hash: bytes
    commitment: Commitment
    logs: Tuple[Log, ...]

    def logs_from(self, address: bytes) -> Iterator[Log]:
        """Yield the logs emitted by `address`, in emission order."""
        for log in self.logs:
            if log.address == address:
                yield log


def _hex_bytes(value: Any, where: str, size: Optional[int] = None) -> bytes:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ViewReconstructionError(f"{where}: expected 0x-prefixed hex, got {value!r}")
    try:
        raw = bytes.fromhex(value[2:])
    except ValueError:
        raise ViewReconstructionError(f"{where}: invalid hex {value!r}")
    if size is not None and len(raw) != size:
        raise ViewReconstructionError(f"{where}: expected {size} bytes, got {len(raw)}")
    return raw


def _hex_int(value: Any, where: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x") or len(value) < 3:
        raise ViewReconstructionError(f"{where}: expected 0x-prefixed quantity, got {value!r}")
    try:
        return int(value, 16)
    except ValueError:
        raise ViewReconstructionError(f"{where}: invalid quantity {value!r}")


def _parse_field(value: Any, kind: Any, where: str) -> Any:
    if kind == INT:
        return _hex_int(value, where)
    if kind == BYTES:
        return _hex_bytes(value, where)
    return _hex_bytes(value, where, size=kind)


def parse_header(header: Dict[str, Any], chain_spec: ChainSpec) -> Dict[str, Any]:
    """Validate the header against the fork active at its height and decode its fields."""
    if not isinstance(header, dict):
        raise ViewReconstructionError("Bundle header must be an object")
    for key in ("number", "timestamp"):
        if key not in header:
            raise ViewReconstructionError(f"Bundle header is missing {key!r}")

    number = _hex_int(header["number"], "header.number")
    timestamp = _hex_int(header["timestamp"], "header.timestamp")
    fork = chain_spec.active_fork(number, timestamp)
    fields = FORK_FIELDS[fork]

    expected = {name for name, _ in fields}
    missing = sorted(expected - set(header))
    extra = sorted(set(header) - expected)
    if missing or extra:
        raise ViewReconstructionError(
            f"Header fields do not match fork {fork}: missing={missing} unexpected={extra}"
        )

    return {name: _parse_field(header[name], kind, f"header.{name}") for name, kind in fields}


def header_hash(parsed_header: Dict[str, Any]) -> bytes:
    """keccak256 of the RLP list of header fields, in the order they were parsed."""
    return bytes(Web3.keccak(rlp.encode(list(parsed_header.values()))))


def parse_receipt(receipt: Dict[str, Any], where: str) -> Receipt:
    if not isinstance(receipt, dict):
        raise ViewReconstructionError(f"{where}: receipt must be an object")
    try:
        raw_logs = receipt["logs"]
        tx_type = _hex_int(receipt["type"], f"{where}.type")
        status = _hex_int(receipt["status"], f"{where}.status")
        gas = _hex_int(receipt["cumulativeGasUsed"], f"{where}.cumulativeGasUsed")
        bloom = _hex_bytes(receipt["logsBloom"], f"{where}.logsBloom", size=256)
    except KeyError as e:
        raise ViewReconstructionError(f"{where}: missing field {e}")
    if tx_type > 0x7F:
        raise ViewReconstructionError(f"{where}: invalid transaction type {tx_type}")
    if not isinstance(raw_logs, list):
        raise ViewReconstructionError(f"{where}.logs must be a list")

    logs = []
    for i, raw in enumerate(raw_logs):
        log_where = f"{where}.logs[{i}]"
        if not isinstance(raw, dict) or not isinstance(raw.get("topics"), list):
            raise ViewReconstructionError(f"{log_where}: malformed log entry")
        address = _hex_bytes(raw.get("address"), f"{log_where}.address", size=20)
        topics = tuple(
            _hex_bytes(t, f"{log_where}.topics[{j}]", size=32) for j, t in enumerate(raw["topics"])
        )
        if len(topics) > 4:
            raise ViewReconstructionError(f"{log_where}: a log carries at most 4 topics")
        data = _hex_bytes(raw.get("data"), f"{log_where}.data")
        logs.append((address, topics, data))

    return Receipt(
        tx_type=tx_type,
        status=status,
        cumulative_gas_used=gas,
        logs_bloom=bloom,
        logs=tuple(logs),
    )


def receipts_root(receipts: Sequence[Receipt]) -> bytes:
    """Root of the receipts trie, keyed by the RLP-encoded transaction index."""
    receipt_trie = HexaryTrie(db={})
    for index, receipt in enumerate(receipts):
        receipt_trie[rlp.encode(index)] = receipt.encode()
    return bytes(receipt_trie.root_hash)


def load_bundle(bundle: bytes) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    try:
        document = json.loads(bundle.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ViewReconstructionError(f"State-proof bundle is not valid JSON: {e}")
    if not isinstance(document, dict):
        raise ViewReconstructionError("State-proof bundle must be a JSON object")
    header = document.get("header")
    receipts = document.get("receipts")
    if header is None or not isinstance(receipts, list):
        raise ViewReconstructionError("State-proof bundle needs 'header' and a 'receipts' list")
    return header, receipts


def dump_bundle(header: Dict[str, Any], receipts: List[Dict[str, Any]]) -> bytes:
    """Serialize a bundle deterministically (sorted keys, compact separators)."""
    document = {"header": header, "receipts": receipts}
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode()


def reconstruct_view(bundle: bytes, chain_spec: ChainSpec) -> VerifiedView:
    """Turn a state-proof bundle into a VerifiedView bound to a block Commitment.

    Raises ViewReconstructionError if the bundle is malformed, targets an
    unsupported fork, or its receipts do not hash to the header's receiptsRoot.
    """
    raw_header, raw_receipts = load_bundle(bundle)
    header = parse_header(raw_header, chain_spec)
    receipts = [parse_receipt(r, f"receipts[{i}]") for i, r in enumerate(raw_receipts)]

    root = receipts_root(receipts)
    if root != header["receiptsRoot"]:
        raise ViewReconstructionError(
            f"Receipts root mismatch: header commits to {Web3.to_hex(header['receiptsRoot'])}, "
            f"bundle receipts hash to {Web3.to_hex(root)}"
        )

    logs = []
    for tx_index, receipt in enumerate(receipts):
        for address, topics, data in receipt.logs:
            logs.append(
                Log(address=address, topics=topics, data=data, tx_index=tx_index, log_index=len(logs))
            )

    block_hash = header_hash(header)
    number = header["number"]
    return VerifiedView(
        block_number=number,
        block_hash=block_hash,
        commitment=Commitment.for_block(number, block_hash, chain_spec),
        logs=tuple(logs),
    )
