"""Governance event registry: declarations, contract roles and optional fields."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable

from abi_codec import EventDeclaration, parse_event_declaration

ROLE_GOVERNOR = "governor"
ROLE_EDIT_SUGGESTIONS = "edit_suggestions"
ROLE_FUTARCHY_TREASURY = "futarchy_treasury"
CONTRACT_ROLES = (ROLE_GOVERNOR, ROLE_EDIT_SUGGESTIONS, ROLE_FUTARCHY_TREASURY)

PROPOSAL_CREATED = "ProposalCreated"
VOTE_CAST = "VoteCast"
PROPOSAL_EXECUTED = "ProposalExecuted"
PROPOSAL_CANCELED = "ProposalCanceled"
SLASHED = "Slashed"
EDIT_SUGGESTED = "EditSuggested"
SUGGESTION_VOTED = "SuggestionVoted"
FUTARCHY_PROPOSAL_CREATED = "FutarchyProposalCreated"
TRADE_PLACED = "TradePlaced"
PROPOSAL_RESOLVED = "ProposalResolved"
COLLATERAL_REDEEMED = "CollateralRedeemed"


@dataclass(frozen=True)
class EventDefinition:
    event_type: str
    role: str
    declaration: EventDeclaration
    optional: frozenset[str] = frozenset()

    @property
    def topic0(self) -> str:
        return self.declaration.topic0


def _define(event_type: str, role: str, declaration: str, optional: Iterable[str] = ()) -> EventDefinition:
    parsed = parse_event_declaration(declaration)
    unknown = set(optional) - {arg.name for arg in parsed.args}
    if unknown:
        raise ValueError(f"{event_type}: optional fields not in declaration: {sorted(unknown)}")
    return EventDefinition(event_type=event_type, role=role, declaration=parsed, optional=frozenset(optional))


@lru_cache(maxsize=1)
def event_definitions() -> tuple[EventDefinition, ...]:
    return (
        _define(
            PROPOSAL_CREATED,
            ROLE_GOVERNOR,
            "ProposalCreated(uint256 indexed proposalId, address indexed proposer, string title, "
            "string description, address[] targets, uint256[] values, bytes[] calldatas, "
            "uint256 startBlock, uint256 endBlock, uint256 stakeAmount)",
            optional=("title", "description", "targets", "values", "calldatas", "stakeAmount"),
        ),
        _define(
            VOTE_CAST,
            ROLE_GOVERNOR,
            "VoteCast(uint256 indexed proposalId, address indexed voter, uint8 support, uint256 weight, string reason)",
            optional=("reason",),
        ),
        # Governor deployments before the reason string was added.
        _define(
            VOTE_CAST,
            ROLE_GOVERNOR,
            "VoteCast(uint256 indexed proposalId, address indexed voter, uint8 support, uint256 weight)",
        ),
        _define(PROPOSAL_EXECUTED, ROLE_GOVERNOR, "ProposalExecuted(uint256 indexed proposalId)"),
        _define(PROPOSAL_CANCELED, ROLE_GOVERNOR, "ProposalCanceled(uint256 indexed proposalId)"),
        _define(
            SLASHED,
            ROLE_GOVERNOR,
            "Slashed(uint256 indexed proposalId, address indexed proposer, uint256 slashedAmount, uint256 returnedAmount)",
        ),
        _define(
            EDIT_SUGGESTED,
            ROLE_EDIT_SUGGESTIONS,
            "EditSuggested(uint256 indexed suggestionId, uint256 indexed proposalId, address indexed suggester, "
            "bytes32 originalHash, string proposedText, uint256 stakeAmount, uint256 editWindowEnd, "
            "uint256 voteWindowEnd)",
            optional=("originalHash", "proposedText", "editWindowEnd", "voteWindowEnd"),
        ),
        _define(
            SUGGESTION_VOTED,
            ROLE_EDIT_SUGGESTIONS,
            "SuggestionVoted(uint256 indexed suggestionId, address indexed voter, bool support, uint256 weight)",
        ),
        _define(
            FUTARCHY_PROPOSAL_CREATED,
            ROLE_FUTARCHY_TREASURY,
            "FutarchyProposalCreated(uint256 indexed proposalId, string description, uint256 amount, "
            "address indexed recipient, uint256 marketEndTime)",
            optional=("description",),
        ),
        _define(
            TRADE_PLACED,
            ROLE_FUTARCHY_TREASURY,
            "TradePlaced(uint256 indexed proposalId, address indexed trader, bool isYes, uint256 amountIn, "
            "uint256 amountOut, uint256 newPrice)",
            optional=("newPrice",),
        ),
        _define(
            PROPOSAL_RESOLVED,
            ROLE_FUTARCHY_TREASURY,
            "ProposalResolved(uint256 indexed proposalId, bool passed, uint256 yesPrice, uint256 noPrice)",
            optional=("yesPrice", "noPrice"),
        ),
        _define(
            COLLATERAL_REDEEMED,
            ROLE_FUTARCHY_TREASURY,
            "CollateralRedeemed(uint256 indexed proposalId, address indexed user, uint256 amount)",
        ),
    )


@lru_cache(maxsize=1)
def definitions_by_topic0() -> dict[str, tuple[EventDefinition, ...]]:
    grouped: dict[str, list[EventDefinition]] = {}
    for definition in event_definitions():
        grouped.setdefault(definition.topic0, []).append(definition)
    return {topic: tuple(defs) for topic, defs in grouped.items()}


def event_types() -> list[str]:
    return sorted({definition.event_type for definition in event_definitions()})


def build_logs_filter(contracts: dict[str, list[str]]) -> dict[str, Any]:
    """eth_getLogs filter covering the configured contracts and their events.

    With no contracts configured the filter matches the governance topics from
    any emitter.
    """
    configured_roles = {role for role, addresses in contracts.items() if addresses}
    topics = sorted(
        {
            definition.topic0
            for definition in event_definitions()
            if not configured_roles or definition.role in configured_roles
        }
    )
    logs_filter: dict[str, Any] = {"topics": [topics]}
    addresses = sorted({address.lower() for role in configured_roles for address in contracts[role]})
    if addresses:
        logs_filter["address"] = addresses
    return logs_filter
