"""Tests for the host-side CLI: bundle building, run, decode and schema."""
from __future__ import annotations

import json

import pytest
from web3 import Web3

import nttattest_app
from factories import CANCUN_BLOCK, build_header
from nttattest_guest import JOURNAL_SCHEMA, decode_journal, read_input
from nttattest_view import ETH_MAINNET_CHAIN_SPEC, FORK_FIELDS, INT, reconstruct_view


def web3_block(header: dict) -> dict:
    """Shape a JSON header the way web3.py returns it from eth_getBlockByNumber."""
    block = {"hash": b"\x00" * 32, "size": 1234, "transactions": []}
    for name, kind in FORK_FIELDS["Cancun"]:
        value = header[name]
        if kind == INT:
            block[name] = int(value, 16)
        elif name == "miner":
            block[name] = Web3.to_checksum_address(value)
        else:
            block[name] = Web3.to_bytes(hexstr=value)
    return block


def web3_receipt(receipt: dict) -> dict:
    return {
        "type": int(receipt["type"], 16),
        "status": int(receipt["status"], 16),
        "cumulativeGasUsed": int(receipt["cumulativeGasUsed"], 16),
        "gasUsed": 21_000,
        "logsBloom": Web3.to_bytes(hexstr=receipt["logsBloom"]),
        "logs": [
            {
                "address": Web3.to_checksum_address(lg["address"]),
                "topics": [Web3.to_bytes(hexstr=t) for t in lg["topics"]],
                "data": Web3.to_bytes(hexstr=lg["data"]),
                "logIndex": 0,
            }
            for lg in receipt["logs"]
        ],
    }


class StubEth:
    def __init__(self, block, receipts, chain_id=1):
        self.block = block
        self.receipts = receipts
        self.chain_id = chain_id
        self.block_number = block["number"] + 5

    def get_block(self, number):
        assert number == self.block["number"]
        return self.block

    def get_block_receipts(self, number):
        assert number == self.block["number"]
        return self.receipts


class StubWeb3:
    def __init__(self, eth):
        self.eth = eth


@pytest.fixture
def stub_w3(scenario_receipts):
    header = build_header(scenario_receipts)
    return StubWeb3(
        StubEth(web3_block(header), [web3_receipt(r) for r in scenario_receipts])
    )


@pytest.fixture
def stub_connect(monkeypatch, stub_w3):
    monkeypatch.setattr(nttattest_app, "connect", lambda rpc: stub_w3)
    return stub_w3


class TestBundleBuilder:
    def test_fetch_bundle_reconstructs_same_block(self, stub_w3, scenario_bundle):
        bundle = nttattest_app.fetch_bundle(stub_w3, CANCUN_BLOCK, ETH_MAINNET_CHAIN_SPEC)

        built = reconstruct_view(bundle, ETH_MAINNET_CHAIN_SPEC)
        expected = reconstruct_view(scenario_bundle, ETH_MAINNET_CHAIN_SPEC)
        assert built.commitment == expected.commitment
        assert built.logs == expected.logs

    def test_header_keeps_only_fork_fields(self, stub_w3):
        header = nttattest_app.header_to_json(stub_w3.eth.block, ETH_MAINNET_CHAIN_SPEC)
        assert set(header) == {name for name, _ in FORK_FIELDS["Cancun"]}
        assert header["miner"] == "0x" + "22" * 20
        assert header["difficulty"] == "0x0"

    def test_normalize_address(self):
        assert nttattest_app.normalize_address(" 0x" + "aa" * 20 + " ") == b"\xaa" * 20
        with pytest.raises(ValueError, match="Invalid address"):
            nttattest_app.normalize_address("0x1234")


class TestCli:
    def test_prepare_run_decode(self, stub_connect, tmp_path, capsys, ntt_address, digests):
        input_path = tmp_path / "input.bin"
        nttattest_app.main(
            ["prepare", "0x" + "aa" * 20, "--block", str(CANCUN_BLOCK), "--index", "2",
             "--rpc", "http://localhost:8545", "--out", str(input_path)]
        )
        guest_input = read_input(input_path.read_bytes())
        assert guest_input.address == ntt_address
        assert guest_input.log_index == 2

        capsys.readouterr()
        nttattest_app.main(["run", str(input_path), "--no-human"])
        journal_hex = capsys.readouterr().out.strip()
        assert decode_journal(Web3.to_bytes(hexstr=journal_hex)).digest == digests[2]

        nttattest_app.main(["decode", journal_hex])
        payload = json.loads(capsys.readouterr().out)
        assert payload["mode"] == "nttattest_journal"
        assert payload["journal"]["nttManagerMessageDigest"] == Web3.to_hex(digests[2])
        assert payload["journal"]["emitterNttManager"] == "0x" + "00" * 12 + "aa" * 20
        assert payload["journal"]["commitment"]["blockNumber"] == CANCUN_BLOCK

    def test_prepare_rejects_out_of_range_index(self, stub_connect, tmp_path, capsys):
        input_path = tmp_path / "input.bin"
        with pytest.raises(SystemExit) as exc:
            nttattest_app.main(
                ["prepare", "0x" + "aa" * 20, "--block", str(CANCUN_BLOCK), "--index", "3",
                 "--rpc", "http://localhost:8545", "--out", str(input_path)]
            )
        assert exc.value.code == 1
        assert "❌" in capsys.readouterr().err
        assert not input_path.exists()

    def test_run_hex_input(self, make_input, tmp_path, capsys, digests):
        input_path = tmp_path / "input.hex"
        input_path.write_text(Web3.to_hex(make_input(0)))
        nttattest_app.main(["run", str(input_path), "--hex"])
        captured = capsys.readouterr()
        assert decode_journal(Web3.to_bytes(hexstr=captured.out.strip())).digest == digests[0]
        assert f"block {CANCUN_BLOCK}" in captured.err

    def test_run_failure_prints_no_journal(self, make_input, tmp_path, capsys):
        input_path = tmp_path / "input.bin"
        input_path.write_bytes(make_input(3))
        with pytest.raises(SystemExit) as exc:
            nttattest_app.main(["run", str(input_path)])
        captured = capsys.readouterr()
        assert exc.value.code == 1
        assert captured.out == ""
        assert "out of range" in captured.err

    def test_decode_rejects_short_journal(self, capsys):
        with pytest.raises(SystemExit):
            nttattest_app.main(["decode", "0x" + "00" * 64])
        assert "160 bytes" in capsys.readouterr().err

    def test_schema(self, capsys):
        nttattest_app.main(["schema"])
        out = capsys.readouterr().out
        assert out == JOURNAL_SCHEMA
        assert "bytes32 emitterNttManager;" in out
