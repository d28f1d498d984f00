from __future__ import annotations

import pytest

from abi_codec import (
    ZERO_ADDRESS,
    decode_event,
    default_value,
    encode_abi,
    event_topic0,
    parse_event_declaration,
    parse_type,
)
from event_registry import build_logs_filter, definitions_by_topic0, event_definitions, event_types
from hashing import keccak256, topic_hash

from ._indexer_helpers import (
    ALICE,
    GOVERNOR,
    PROPOSAL_CREATED_DECL,
    TREASURY,
    VOTE_CAST_DECL,
    build_log,
)


def test_keccak_known_vectors():
    assert keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"
    assert topic_hash("Transfer(address,address,uint256)") == (
        "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    )


def test_keccak_block_boundaries_produce_distinct_digests():
    digests = {keccak256(b"a" * n) for n in (134, 135, 136, 137, 271, 272)}
    assert len(digests) == 6
    assert all(len(d) == 32 for d in digests)


def test_event_declaration_canonicalizes_types_and_names():
    decl = parse_event_declaration(VOTE_CAST_DECL)
    assert decl.canonical == "VoteCast(uint256,address,uint8,uint256,string)"
    assert [arg.name for arg in decl.indexed_args] == ["proposalId", "voter"]
    assert [arg.name for arg in decl.data_args] == ["support", "weight", "reason"]
    assert decl.topic0 == event_topic0("VoteCast(uint256 indexed, address indexed, uint8, uint256, string)")


def test_parse_type_rejects_nested_and_fixed_arrays():
    assert parse_type("uint").bits == 256
    assert parse_type("bytes[]").item == parse_type("bytes")
    with pytest.raises(ValueError):
        parse_type("uint256[][]")
    with pytest.raises(ValueError):
        parse_type("address[2]")
    with pytest.raises(ValueError):
        parse_type("uint7")


def test_defaults_per_type():
    assert default_value(parse_type("string")) == ""
    assert default_value(parse_type("uint256")) == "0"
    assert default_value(parse_type("bool")) is False
    assert default_value(parse_type("address[]")) == []
    assert default_value(parse_type("address")) == ZERO_ADDRESS
    assert default_value(parse_type("bytes4")) == "0x00000000"


def test_decode_proposal_created_with_arrays():
    log = build_log(
        PROPOSAL_CREATED_DECL,
        [7, ALICE],
        [
            "Fund the docs",
            "Pay writers",
            [TREASURY],
            ["5"],
            ["0xdeadbeef"],
            100,
            200,
            10**18,
        ],
    )
    decl = parse_event_declaration(PROPOSAL_CREATED_DECL)
    values, defaulted = decode_event(decl, log["topics"], log["data"])
    assert defaulted == []
    assert values["proposalId"] == "7"
    assert values["proposer"] == ALICE
    assert values["title"] == "Fund the docs"
    assert values["targets"] == [TREASURY]
    assert values["values"] == ["5"]
    assert values["calldatas"] == ["0xdeadbeef"]
    assert values["endBlock"] == "200"
    assert values["stakeAmount"] == str(10**18)


def test_decode_event_defaults_optional_and_rejects_required():
    decl = parse_event_declaration(VOTE_CAST_DECL)
    types = [arg.type for arg in decl.data_args]
    full = encode_abi(types, [1, 100, "because"])
    log = build_log(VOTE_CAST_DECL, [3, ALICE], [1, 100, "because"])

    # Head words only: the string offset points past the end of data.
    truncated = "0x" + full[:96].hex()
    values, defaulted = decode_event(decl, log["topics"], truncated, optional=("reason",))
    assert values["reason"] == ""
    assert defaulted == ["reason"]
    assert values["weight"] == "100"

    with pytest.raises(ValueError, match="support"):
        decode_event(decl, log["topics"], "0x", optional=("reason",))
    with pytest.raises(ValueError, match="voter"):
        decode_event(decl, log["topics"][:2], log["data"], optional=("reason",))


def test_decode_event_rejects_dirty_address_topic():
    decl = parse_event_declaration(VOTE_CAST_DECL)
    log = build_log(VOTE_CAST_DECL, [3, ALICE], [1, 100, ""])
    topics = list(log["topics"])
    topics[2] = "0x" + "ff" * 12 + topics[2][26:]
    with pytest.raises(ValueError, match="dirty"):
        decode_event(decl, topics, log["data"])


def test_registry_groups_vote_cast_variants_by_topic():
    by_topic = definitions_by_topic0()
    vote_topics = [d.topic0 for d in event_definitions() if d.event_type == "VoteCast"]
    assert len(set(vote_topics)) == 2
    assert all(len(by_topic[t]) == 1 for t in vote_topics)
    assert "ProposalCreated" in event_types()
    assert len(event_types()) == 11


def test_logs_filter_limits_topics_to_configured_roles():
    governor_only = build_logs_filter({"governor": [GOVERNOR]})
    assert governor_only["address"] == [GOVERNOR]
    governor_topics = {d.topic0 for d in event_definitions() if d.role == "governor"}
    assert set(governor_only["topics"][0]) == governor_topics

    open_filter = build_logs_filter({})
    assert "address" not in open_filter
    assert len(open_filter["topics"][0]) == len(event_definitions())
