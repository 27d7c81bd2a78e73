"""
Pydantic Data Models for the Sale Escrow

This module defines the records a Sale keeps (configuration, rounds, participation
ledger, settlement flags), the notifications it emits, and the snapshot used to export
a sale's persisted fields.

Key Components:
- SaleConfig: sale parameters plus the totalTokensSold / totalBaseRaised accumulators
- Round: one (tier_id, start_time) entry of the round schedule
- ParticipationRecord: per-investor ledger entry, created once per identity
- FeeSnapshot: service fee parameters copied from the registry at deployment
- SettlementState: outcome and owner-side withdrawal flags
- Events: SaleCreated, RoundAdded, TokensSold, TokensWithdrawn and the settlement events
- SaleSnapshot: every persisted field of a sale, JSON-serializable

Identities are solders Pubkey values and serialize to their base58 string form.
Amounts are plain integers in the smallest unit of their ledger.
"""
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from solders.pubkey import Pubkey

PubkeyField = Annotated[Pubkey, PlainSerializer(lambda key: str(key), return_type=str)]


class _Model(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class SalePhase(str, Enum):
    uninitialized = "uninitialized"
    configured = "configured"
    rounds_set = "rounds_set"
    succeeded = "succeeded"
    cancelled = "cancelled"


class SaleConfig(_Model):
    token: PubkeyField
    sale_owner: PubkeyField
    price_in_base_units: int  # base units per whole sale token
    sale_start: int
    sale_end: int
    public_round: int = 0
    hard_cap: int
    soft_cap: int
    total_tokens_sold: int = 0
    total_base_raised: int = 0


class Round(_Model):
    tier_id: int
    start_time: int


class ParticipationRecord(_Model):
    tier_id_used: int
    amount_bought: int
    amount_paid: int
    has_withdrawn: bool = False


class FeeSnapshot(_Model):
    fee_rate_bps: int = Field(ge=0, le=10_000)
    fee_recipient: PubkeyField


class SettlementState(_Model):
    sale_finished: bool = False
    is_successful: bool = False
    earnings_withdrawn: bool = False
    leftover_withdrawn: bool = False
    deposit_reclaimed: bool = False


# --- Events ---

class SaleEvent(_Model):
    name: str
    timestamp: int


class SaleCreated(SaleEvent):
    name: str = "SaleCreated"
    sale_owner: PubkeyField
    price_in_base_units: int
    sale_end: int
    hard_cap: int
    soft_cap: int


class RoundAdded(SaleEvent):
    name: str = "RoundAdded"
    tier_id: int
    start_time: int


class TokensSold(SaleEvent):
    name: str = "TokensSold"
    investor: PubkeyField
    tokens_bought: int


class TokensWithdrawn(SaleEvent):
    name: str = "TokensWithdrawn"
    investor: PubkeyField
    tokens_bought: int


class EarningsWithdrawn(SaleEvent):
    name: str = "EarningsWithdrawn"
    owner_amount: int
    fee_amount: int


class LeftoverWithdrawn(SaleEvent):
    name: str = "LeftoverWithdrawn"
    destination: PubkeyField
    amount: int


class FundsRefunded(SaleEvent):
    name: str = "FundsRefunded"
    investor: PubkeyField
    amount: int


class SaleSnapshot(_Model):
    """Every persisted field of a sale, as written by SaleRegistry.export_sale."""

    address: PubkeyField
    payment_ledger: str
    phase: SalePhase
    config: Optional[SaleConfig] = None
    rounds: List[Round] = []
    tier_grants: Dict[str, int] = {}
    participations: Dict[str, ParticipationRecord] = {}
    is_created: bool = False
    tokens_deposited: bool = False
    settlement: SettlementState
    fees: FeeSnapshot
