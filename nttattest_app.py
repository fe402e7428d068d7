# nttattest_app.py
"""
nttattest: host-side tooling for the NTT TransferSent attestation guest.

This script:
  - prepare: connects to an Ethereum node via web3.py, fetches a block header and
    all of its receipts, packs them into a state-proof bundle and frames the guest
    input (bundle, NTT manager address, log index)
  - run: executes the guest over a framed input and prints the journal
  - decode: decodes a journal into JSON for inspection or off-chain verification
  - schema: prints the Solidity journal schema an external verifier decodes against

The journal binds an NTT manager message digest and its wormhole-encoded emitter
to a block commitment, and is what a zkVM proof of the guest commits to.
"""

import os
import sys
import json
import time
import argparse
from typing import Any, Dict, List

from web3 import Web3

from nttattest_errors import AttestationError
from nttattest_guest import (
    JOURNAL_SCHEMA,
    TRANSFER_SENT,
    decode_journal,
    query_events,
    run_guest,
    select_event,
    write_input,
)
from nttattest_view import (
    ETH_MAINNET_CHAIN_SPEC,
    FORK_FIELDS,
    INT,
    ChainSpec,
    dump_bundle,
    reconstruct_view,
)

DEFAULT_RPC = os.getenv("RPC_URL", "https://mainnet.infura.io/v3/your_api_key")
DEFAULT_TIMEOUT = int(os.getenv("RPC_TIMEOUT", "25"))

NETWORKS: Dict[int, str] = {
    1: "Ethereum Mainnet",
    11155111: "Sepolia Testnet",
    17000: "Holesky Testnet",
}


def network_name(cid: int) -> str:
    return NETWORKS.get(cid, f"Unknown (chain ID {cid})")


def connect(rpc: str) -> Web3:
    start = time.time()
    w3 = Web3(Web3.HTTPProvider(rpc, request_kwargs={"timeout": DEFAULT_TIMEOUT}))

    if not w3.is_connected():
        print(f"❌ Failed to connect to RPC endpoint: {rpc}", file=sys.stderr)
        sys.exit(1)

    latency = time.time() - start
    cid = int(w3.eth.chain_id)
    tip = int(w3.eth.block_number)
    print(
        f"🌐 Connected to {network_name(cid)} (chainId {cid}, tip={tip}) in {latency:.2f}s",
        file=sys.stderr,
    )
    return w3


def normalize_address(addr: str) -> bytes:
    try:
        return Web3.to_bytes(hexstr=Web3.to_checksum_address(addr.strip()))
    except Exception:
        raise ValueError(f"Invalid address: {addr!r}")


def _to_hex(value: Any) -> str:
    # web3 returns addresses as checksummed strings and everything else as int/HexBytes.
    if isinstance(value, str):
        return Web3.to_hex(hexstr=value)
    return Web3.to_hex(value)


def header_to_json(block: Dict[str, Any], chain_spec: ChainSpec) -> Dict[str, str]:
    """Keep exactly the header fields of the fork active at this block, as hex strings."""
    fork = chain_spec.active_fork(int(block["number"]), int(block["timestamp"]))
    header = {}
    for name, kind in FORK_FIELDS[fork]:
        value = block[name]
        header[name] = Web3.to_hex(int(value)) if kind == INT else _to_hex(value)
    return header


def receipt_to_json(receipt: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": Web3.to_hex(int(receipt.get("type", 0))),
        "status": Web3.to_hex(int(receipt["status"])),
        "cumulativeGasUsed": Web3.to_hex(int(receipt["cumulativeGasUsed"])),
        "logsBloom": _to_hex(receipt["logsBloom"]),
        "logs": [
            {
                "address": _to_hex(lg["address"]),
                "topics": [_to_hex(t) for t in lg["topics"]],
                "data": _to_hex(lg["data"]),
            }
            for lg in receipt["logs"]
        ],
    }


def fetch_bundle(w3: Web3, block_number: int, chain_spec: ChainSpec) -> bytes:
    """Fetch a block header plus every receipt of the block and serialize the bundle."""
    print(f"🔍 Fetching header and receipts of block {block_number}...", file=sys.stderr)

    t0 = time.time()
    block = w3.eth.get_block(block_number)
    receipts: List[Dict[str, Any]] = list(w3.eth.get_block_receipts(block_number))
    elapsed = time.time() - t0

    print(
        f"   ⏳ {len(receipts)} receipts fetched in {elapsed:.2f}s",
        file=sys.stderr,
    )
    return dump_bundle(header_to_json(block, chain_spec), [receipt_to_json(r) for r in receipts])


def preflight(bundle: bytes, address: bytes, log_index: int, chain_spec: ChainSpec) -> None:
    """Run the guest's own checks on the host so a bad input fails before proving."""
    view = reconstruct_view(bundle, chain_spec)
    records = query_events(view, TRANSFER_SENT, address)
    print(
        f"🔐 Block {view.block_number} hash {Web3.to_hex(view.block_hash)}: "
        f"{len(records)} {TRANSFER_SENT.name} event(s) from {Web3.to_checksum_address(address)}",
        file=sys.stderr,
    )
    record = select_event(records, log_index)
    print(
        f"   ✅ log index {log_index} -> digest {Web3.to_hex(record.digest)} "
        f"(tx {record.tx_index}, block log {record.log_index})",
        file=sys.stderr,
    )


def write_output(data: bytes, out: str) -> None:
    if out:
        with open(out, "wb") as f:
            f.write(data)
        print(f"💾 Wrote {len(data)} bytes to {out}", file=sys.stderr)
    else:
        print(Web3.to_hex(data))


def read_blob(path: str, is_hex: bool) -> bytes:
    with open(path, "rb") as f:
        data = f.read()
    if is_hex:
        return Web3.to_bytes(hexstr=data.decode().strip())
    return data


def cmd_prepare(args: argparse.Namespace) -> None:
    if "your_api_key" in args.rpc:
        print(
            "⚠️  RPC_URL is not set and DEFAULT_RPC still uses a placeholder key. "
            "Set RPC_URL or pass --rpc.",
            file=sys.stderr,
        )
    address = normalize_address(args.address)
    if args.index < 0:
        raise ValueError("--index must be >= 0")

    w3 = connect(args.rpc)
    cid = int(w3.eth.chain_id)
    if cid != ETH_MAINNET_CHAIN_SPEC.chain_id:
        print(
            f"⚠️  Guest is built for chainId {ETH_MAINNET_CHAIN_SPEC.chain_id}, "
            f"RPC serves {network_name(cid)}; the guest will reject this bundle.",
            file=sys.stderr,
        )

    block_number = args.block if args.block is not None else int(w3.eth.block_number)
    bundle = fetch_bundle(w3, block_number, ETH_MAINNET_CHAIN_SPEC)
    preflight(bundle, address, args.index, ETH_MAINNET_CHAIN_SPEC)

    write_output(write_input(bundle, address, args.index), args.out)


def cmd_run(args: argparse.Namespace) -> None:
    stream = read_blob(args.input, args.hex)

    t0 = time.time()
    journal_bytes = run_guest(stream)
    elapsed = time.time() - t0

    if not args.no_human:
        journal = decode_journal(journal_bytes)
        print(
            f"🔐 Journal committed for block {journal.commitment.block_number} "
            f"({Web3.to_hex(journal.commitment.digest)})",
            file=sys.stderr,
        )
        print(f"⏱️  Guest execution took {elapsed:.2f}s", file=sys.stderr)

    write_output(journal_bytes, args.out)


def cmd_decode(args: argparse.Namespace) -> None:
    journal = decode_journal(Web3.to_bytes(hexstr=args.journal.strip()))
    payload = {"mode": "nttattest_journal", "journal": journal.to_dict()}
    if args.pretty:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True))


def cmd_schema(args: argparse.Namespace) -> None:
    print(JOURNAL_SCHEMA, end="")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Prepare, run and decode NTT TransferSent attestations.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    prepare = sub.add_parser(
        "prepare",
        help="Build a framed guest input from a live RPC node.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    prepare.add_argument("address", help="NTT manager contract address.")
    prepare.add_argument(
        "--block",
        type=int,
        help="Block holding the TransferSent event (defaults to chain tip).",
    )
    prepare.add_argument(
        "--index",
        type=int,
        default=0,
        help="Which TransferSent occurrence of the contract in the block to prove.",
    )
    prepare.add_argument(
        "--rpc",
        default=DEFAULT_RPC,
        help="RPC URL (default from RPC_URL env).",
    )
    prepare.add_argument("--out", help="Write raw input bytes here instead of hex to stdout.")
    prepare.set_defaults(func=cmd_prepare)

    run = sub.add_parser(
        "run",
        help="Execute the guest over a framed input and emit the journal.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    run.add_argument("input", help="Path to a framed guest input.")
    run.add_argument("--hex", action="store_true", help="Input file holds 0x-hex text.")
    run.add_argument("--out", help="Write raw journal bytes here instead of hex to stdout.")
    run.add_argument(
        "--no-human",
        action="store_true",
        help="Disable human summary (journal only).",
    )
    run.set_defaults(func=cmd_run)

    decode = sub.add_parser("decode", help="Decode a 0x-hex journal into JSON.")
    decode.add_argument("journal", help="Journal bytes as 0x-hex.")
    decode.add_argument(
        "--pretty",
        action="store_true",
        help="Pretty-print JSON instead of compact output.",
    )
    decode.set_defaults(func=cmd_decode)

    schema = sub.add_parser("schema", help="Print the Solidity journal schema.")
    schema.set_defaults(func=cmd_schema)

    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    try:
        args.func(args)
    except (AttestationError, ValueError) as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
