import json

import pyarrow.parquet as pq
from typer.testing import CliRunner

from bindexer.adapters.manifest_jsonl import JSONLManifest
from bindexer.domain.decoding import decode_log
from bindexer.domain.models import ChunkRec
from bindexer.presentation.cli import app
from fakes import TOKEN, TRANSFER, transfer_log

runner = CliRunner()

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


def _config(tmp_path, **extra):
    doc = {"network": "mainnet", "contracts": [{"address": USDC, "name": "USDC"}],
           "events": ["Transfer(address indexed from, address indexed to, uint256 value)"],
           "database": {"path": str(tmp_path / "cli.sqlite")}}
    doc.update(extra)
    p = tmp_path / "bindexer.config.json"
    p.write_text(json.dumps(doc))
    return str(p)


def test_generate_config_prints_json():
    result = runner.invoke(app, ["generate-config", "--template", "erc20"])
    assert result.exit_code == 0
    doc = json.loads(result.stdout)
    assert doc["project"] == "erc20-indexer"


def test_generate_config_unknown_template():
    assert runner.invoke(app, ["generate-config", "-t", "nope"]).exit_code == 1


def test_init_writes_and_refuses_to_overwrite(tmp_path):
    out = str(tmp_path / "cfg.json")
    assert runner.invoke(app, ["init", "-t", "minimal", "-o", out]).exit_code == 0
    assert json.loads(open(out).read())["network"] == "sepolia"
    assert runner.invoke(app, ["init", "-o", out]).exit_code == 1
    assert runner.invoke(app, ["init", "-o", out, "--force"]).exit_code == 0
    assert json.loads(open(out).read())["project"] == "my-blockchain-indexer"


def test_validate_ok_and_failing(tmp_path):
    assert runner.invoke(app, ["--config", _config(tmp_path), "validate"]).exit_code == 0
    bad = _config(tmp_path, contracts=["0xnope"])
    assert runner.invoke(app, ["--config", bad, "validate"]).exit_code == 1


def test_schema_prints_ddl(tmp_path):
    result = runner.invoke(app, ["--config", _config(tmp_path), "schema"])
    assert result.exit_code == 0
    assert "CREATE TABLE IF NOT EXISTS event_transfer" in result.stdout
    assert "idx_event_transfer_unique" in result.stdout


def test_backfill_needs_an_rpc_endpoint(tmp_path, monkeypatch):
    monkeypatch.delenv("RPC_URL", raising=False)
    monkeypatch.delenv("BINDEXER_RPC_URL", raising=False)
    cfg = _config(tmp_path, network={"name": "devnet", "chainId": 31337})
    result = runner.invoke(app, ["--config", cfg, "-q", "backfill", "--from-block", "1"])
    assert result.exit_code == 1


def test_export_to_parquet(store, db_path, tmp_path):
    for block in (3, 1, 2):
        store.insert(decode_log(transfer_log(block), TRANSFER), "Transfer")
    out = str(tmp_path / "out" / "transfer.parquet")
    result = runner.invoke(app, ["export", "Transfer", "--out", out, "--database", db_path])
    assert result.exit_code == 0
    table = pq.read_table(out)
    assert table.num_rows == 3
    assert table.column("block_number").to_pylist() == [1, 2, 3]
    assert set(table.column("contract_address").to_pylist()) == {TOKEN}


def test_gaps_exit_code(tmp_path):
    path = str(tmp_path / "m.jsonl")
    with open(path, "w") as f:
        for rec in (ChunkRec(1, 10, "done", contract=TOKEN, event="Transfer"),
                    ChunkRec(11, 20, "failed", contract=TOKEN, event="Transfer")):
            f.write(json.dumps({"from_block": rec.from_block, "to_block": rec.to_block, "status": rec.status,
                                "contract": rec.contract, "event": rec.event}) + "\n")
    assert len(JSONLManifest.load(path)) == 2
    assert runner.invoke(app, ["gaps", path, "--from-block", "1", "--to-block", "20"]).exit_code == 2
    assert runner.invoke(app, ["gaps", path, "--from-block", "1", "--to-block", "10"]).exit_code == 0
