from __future__ import annotations

import pytest

from abi_codec import encode_abi, parse_event_declaration
from error_map import MalformedLogError
from event_decoder import EventDecoder, snake_case

from ._indexer_helpers import (
    ALICE,
    BOB,
    CHAIN_ID,
    EDIT_SUGGESTIONS,
    GOVERNOR,
    LEGACY_VOTE_CAST_DECL,
    TRADE_PLACED_DECL,
    TREASURY,
    VOTE_CAST_DECL,
    build_log,
    executed_log,
    vote_log,
)

CONTRACTS = {"governor": [GOVERNOR], "edit_suggestions": [EDIT_SUGGESTIONS], "futarchy_treasury": [TREASURY]}


def _placed(raw_log: dict, block_number: int = 10, log_index: int = 0, block_hash: str = "0x" + "ab" * 32) -> dict:
    log = dict(raw_log)
    log["blockNumber"] = hex(block_number)
    log["logIndex"] = hex(log_index)
    log["blockHash"] = block_hash
    log["transactionHash"] = "0x" + f"{block_number:02x}{log_index:02x}" * 16
    return log


def test_snake_case():
    assert snake_case("proposalId") == "proposal_id"
    assert snake_case("editWindowEnd") == "edit_window_end"
    assert snake_case("isYes") == "is_yes"


def test_decode_vote_cast():
    decoder = EventDecoder(CHAIN_ID, CONTRACTS)
    log = _placed(vote_log(7, ALICE, support=1, weight=250, reason="looks good"), block_number=12, log_index=3)
    event = decoder.decode(log, block_timestamp=1_700_000_144)

    assert event is not None
    assert event.event_type == "VoteCast"
    assert event.event_id == f"{log['transactionHash']}:3"
    assert event.chain_id == CHAIN_ID
    assert event.contract_address == GOVERNOR
    assert event.block_number == 12
    assert event.emitted_at == 1_700_000_144
    assert event.payload == {
        "proposal_id": "7",
        "voter": ALICE,
        "support": "1",
        "weight": "250",
        "reason": "looks good",
    }


def test_legacy_vote_cast_decodes_as_vote_cast():
    decoder = EventDecoder(CHAIN_ID, CONTRACTS)
    log = _placed(build_log(LEGACY_VOTE_CAST_DECL, [7, BOB], [0, 10]))
    event = decoder.decode(log)
    assert event is not None
    assert event.event_type == "VoteCast"
    assert event.payload["voter"] == BOB
    assert "reason" not in event.payload


def test_missing_optional_field_gets_default():
    decl = parse_event_declaration(TRADE_PLACED_DECL)
    head_only = encode_abi([arg.type for arg in decl.data_args], [True, 100, 90, 5])[:96]
    log = build_log(TRADE_PLACED_DECL, [4, ALICE], [True, 100, 90, 5], address=TREASURY)
    log["data"] = "0x" + head_only.hex()

    event = EventDecoder(CHAIN_ID, CONTRACTS).decode(_placed(log))
    assert event is not None
    assert event.event_type == "TradePlaced"
    assert event.payload["is_yes"] is True
    assert event.payload["amount_out"] == "90"
    assert event.payload["new_price"] == "0"


def test_missing_required_field_raises():
    log = _placed(vote_log(7))
    log["data"] = "0x"
    with pytest.raises(MalformedLogError, match="support"):
        EventDecoder(CHAIN_ID, CONTRACTS).decode(log)

    missing_hash = _placed(vote_log(7))
    del missing_hash["blockHash"]
    with pytest.raises(MalformedLogError, match="blockHash"):
        EventDecoder(CHAIN_ID, CONTRACTS).decode(missing_hash)


def test_unknown_removed_and_foreign_logs_are_skipped():
    decoder = EventDecoder(CHAIN_ID, CONTRACTS)
    unknown = _placed(vote_log(1))
    unknown["topics"] = ["0x" + "11" * 32]
    assert decoder.decode(unknown) is None

    removed = _placed(vote_log(1))
    removed["removed"] = True
    assert decoder.decode(removed) is None

    # Right topic, emitted by the treasury rather than the governor.
    foreign = _placed(build_log(VOTE_CAST_DECL, [1, ALICE], [1, 1, ""], address=TREASURY))
    assert decoder.decode(foreign) is None

    # Without configured contracts any emitter is accepted.
    assert EventDecoder(CHAIN_ID).decode(foreign) is not None


def test_decode_logs_skips_malformed_and_orders_by_position(caplog):
    decoder = EventDecoder(CHAIN_ID, CONTRACTS)
    broken = _placed(vote_log(2), block_number=11, log_index=0)
    broken["data"] = "0x"
    logs = [
        _placed(executed_log(1), block_number=12, log_index=1),
        broken,
        _placed(vote_log(1), block_number=11, log_index=4),
        _placed(vote_log(1, BOB), block_number=12, log_index=0),
        "not a log",
    ]
    with caplog.at_level("WARNING", logger="event_decoder"):
        events, skipped = decoder.decode_logs(logs, timestamps={11: 111, 12: 112})

    assert skipped == 2
    assert [(e.block_number, e.log_index) for e in events] == [(11, 4), (12, 0), (12, 1)]
    assert [e.emitted_at for e in events] == [111, 112, 112]
    assert "skipping malformed log" in caplog.text
