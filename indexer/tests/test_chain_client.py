from __future__ import annotations

import pytest

from chain_client import ChainClient
from error_map import ERR_RPC_REMOTE, ERR_RPC_TRANSPORT, InvalidRangeError, TransientRpcError
from event_registry import build_logs_filter
from logs_engine import build_log_key, run_chunked_logs

from ._indexer_helpers import CHAIN_ID, GOVERNOR, FakeChain, _serve, _stop, executed_log, vote_log


def test_heights_headers_and_chain_id():
    chain = FakeChain(20)
    server, url = _serve(chain)
    try:
        client = ChainClient(url, retries=0)
        assert client.chain_id() == CHAIN_ID
        assert client.current_height() == 20

        header = client.block_header(7)
        assert header.number == 7
        assert header.hash == chain.block_hash(7)
        assert header.parent_hash == chain.block_hash(6)
        assert header.timestamp == 1_700_000_000 + 7 * 12

        headers = client.block_headers(range(5, 9))
        assert [h.number for h in headers] == [5, 6, 7, 8]
        assert headers[-1].parent_hash == headers[-2].hash
        assert isinstance(server.calls[-1], list) and len(server.calls[-1]) == 4
    finally:
        _stop(server)


def test_missing_block_and_remote_errors_are_transient():
    chain = FakeChain(3)
    server, url = _serve(chain)
    try:
        client = ChainClient(url, retries=0)
        with pytest.raises(TransientRpcError, match="not available"):
            client.block_header(50)

        chain.fail_next("eth_blockNumber")
        with pytest.raises(TransientRpcError) as excinfo:
            client.current_height()
        assert excinfo.value.code == ERR_RPC_REMOTE
        assert client.current_height() == 3
    finally:
        _stop(server)


def test_unreachable_node_is_transient():
    client = ChainClient("http://127.0.0.1:9", timeout_seconds=1.0, retries=0)
    with pytest.raises(TransientRpcError) as excinfo:
        client.current_height()
    assert excinfo.value.code == ERR_RPC_TRANSPORT


def test_logs_range_validation_and_adaptive_split():
    chain = FakeChain(40)
    chain.add_log(10, vote_log(1))
    chain.add_log(10, vote_log(1))
    chain.add_log(33, executed_log(1))
    server, url = _serve(chain)
    try:
        client = ChainClient(url, retries=0, log_chunk_size=50)
        with pytest.raises(InvalidRangeError):
            client.logs(10, 9)

        chain.fail_next("eth_getLogs", message="query returned more than 10000 results")
        logs = client.logs(1, 40, build_logs_filter({"governor": [GOVERNOR]}))
        assert [(int(log["blockNumber"], 16), int(log["logIndex"], 16)) for log in logs] == [(10, 0), (10, 1), (33, 0)]
        get_logs_calls = [c for c in server.calls if isinstance(c, dict) and c["method"] == "eth_getLogs"]
        assert len(get_logs_calls) == 3

        chain.fail_next("eth_getLogs", message="internal error")
        with pytest.raises(TransientRpcError, match="internal error"):
            client.logs(1, 40)
    finally:
        _stop(server)


def test_chunked_logs_dedupes_and_passes_wrong_shaped_entries():
    good = {"blockNumber": "0x1", "logIndex": "0x0", "transactionHash": "0xaa"}
    bad = {"blockNumber": "0x1", "logIndex": ["0x0"], "transactionHash": "0xaa"}

    def fetch_chunk(chunk_filter):
        return 0, {"result": [good, dict(good), bad, dict(bad)]}

    rc, payload = run_chunked_logs(from_block=1, to_block=1, logs_filter={}, fetch_chunk=fetch_chunk)
    assert rc == 0
    assert payload["result"] == [good, bad]
    assert payload["summary"]["deduped_logs"] == 2
    assert build_log_key(good) == ("0x1", "0x0", "0xaa")
    assert build_log_key(bad)[0] == "raw"
