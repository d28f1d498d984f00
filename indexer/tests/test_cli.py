from __future__ import annotations

import json

from ._indexer_helpers import FakeChain, _run_cmd, _serve, _stop, executed_log, vote_log


def test_sync_then_query(tmp_path):
    db_path = str(tmp_path / "indexer.db")
    chain = FakeChain(30)
    chain.add_log(12, vote_log(1))
    chain.add_log(15, executed_log(1))
    chain.add_log(29, vote_log(2))
    server, url = _serve(chain)
    try:
        proc = _run_cmd(
            "sync",
            [
                "--rpc-url",
                url,
                "--db-path",
                db_path,
                "--start-block",
                "10",
                "--confirmation-depth",
                "2",
                "--compact",
            ],
        )
        assert proc.returncode == 0, proc.stdout + proc.stderr
        payload = json.loads(proc.stdout)
        assert payload["ok"] is True
        assert payload["method"] == "sync"
        assert [step["outcome"] for step in payload["result"]["steps"]] == ["committed", "idle"]
        assert payload["result"]["status"]["last_processed_block_number"] == 28
        assert "committed blocks 10-28" in proc.stderr
    finally:
        _stop(server)

    proc = _run_cmd("status", ["--db-path", db_path])
    assert proc.returncode == 0, proc.stdout + proc.stderr
    status = json.loads(proc.stdout)["result"]
    assert status["last_processed_block_number"] == 28
    assert status["checkpoint"]["chain_id"] == chain.chain_id
    assert status["event_counts"]["live"] == {"ProposalExecuted": 1, "VoteCast": 1}

    proc = _run_cmd("events", ["--db-path", db_path, "--type", "VoteCast"])
    assert proc.returncode == 0, proc.stdout + proc.stderr
    result = json.loads(proc.stdout)["result"]
    assert result["count"] == 1
    assert result["events"][0]["payload"]["proposal_id"] == "1"
    assert result["events"][0]["reorged"] is False

    proc = _run_cmd("events", ["--db-path", db_path, "--proposal-id", "1"])
    assert [e["event_type"] for e in json.loads(proc.stdout)["result"]["events"]] == ["VoteCast", "ProposalExecuted"]


def test_sync_requires_rpc_url(tmp_path):
    proc = _run_cmd("sync", ["--db-path", str(tmp_path / "x.db")])
    assert proc.returncode == 2
    payload = json.loads(proc.stdout)
    assert payload["ok"] is False
    assert payload["error_code"] == "INVALID_CONFIG"


def test_rpc_url_from_environment(tmp_path):
    chain = FakeChain(8)
    server, url = _serve(chain)
    try:
        proc = _run_cmd(
            "sync",
            ["--db-path", str(tmp_path / "x.db"), "--start-block", "0"],
            extra_env={"ETH_RPC_URL": url, "INDEXER_CONFIRMATION_DEPTH": "3"},
        )
        assert proc.returncode == 0, proc.stdout + proc.stderr
        assert json.loads(proc.stdout)["result"]["status"]["last_processed_block_number"] == 5
    finally:
        _stop(server)


def test_unreachable_node_exits_with_runtime_error(tmp_path):
    config_path = tmp_path / "indexer.yaml"
    config_path.write_text("rpcUrl: http://127.0.0.1:9\nmaxRetries: 0\nrpcRetries: 0\n", encoding="utf-8")
    proc = _run_cmd("sync", ["--config", str(config_path), "--db-path", str(tmp_path / "x.db")])
    assert proc.returncode == 1, proc.stdout + proc.stderr
    payload = json.loads(proc.stdout)
    assert payload["error_code"] == "RPC_TRANSPORT_ERROR"


def test_events_rejects_unknown_type(tmp_path):
    proc = _run_cmd("events", ["--db-path", str(tmp_path / "x.db"), "--type", "Transfer"])
    assert proc.returncode == 2
    payload = json.loads(proc.stdout)
    assert payload["error_code"] == "INVALID_REQUEST"
    assert "unknown event type" in payload["error_message"]
