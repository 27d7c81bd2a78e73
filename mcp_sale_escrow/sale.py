"""
Tiered Token Sale State Machine

A Sale escrows a fixed supply of a project token and sells it for a base currency in
tier-gated, time-boxed rounds. The lifecycle is:

    uninitialized -> configured -> rounds_set -> succeeded | cancelled

Within rounds_set the open round is derived from the clock (see rounds.current_round).
Once finished, each actor has its own withdrawal path:

- succeeded: investors claim tokens (withdraw), the owner takes earnings minus the
  service fee and the unsold leftover (optionally burned)
- cancelled: investors are refunded their payment, the owner reclaims the deposit

Every operation checks all of its preconditions before it mutates anything. Completion
flags are set before the outbound transfer they guard, so a receiver that re-enters the
sale during the transfer is rejected by the same check. If the transfer itself fails the
flag is restored and the error propagates.
"""
import time
from contextlib import ExitStack
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from solders.pubkey import Pubkey
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_sale_escrow import pricing, rounds
from mcp_sale_escrow.access import AccessGate, is_null
from mcp_sale_escrow.config import BURN_ADDRESS
from mcp_sale_escrow.errors import (
    AuthorizationError,
    CapacityError,
    StateError,
    ValidationError,
)
from mcp_sale_escrow.ledger import InMemoryLedger, TokenDirectory
from mcp_sale_escrow.schemas import (
    EarningsWithdrawn,
    FeeSnapshot,
    FundsRefunded,
    LeftoverWithdrawn,
    ParticipationRecord,
    Round,
    RoundAdded,
    SaleConfig,
    SaleCreated,
    SaleEvent,
    SalePhase,
    SaleSnapshot,
    SettlementState,
    TokensSold,
    TokensWithdrawn,
)

logger = get_logger(__name__)

_FINISHED = (SalePhase.succeeded, SalePhase.cancelled)

PayoutLeg = Tuple[InMemoryLedger, Sequence[Tuple[Pubkey, int]]]


def _now() -> int:
    return int(time.time())


class Sale:
    def __init__(
        self,
        address: Pubkey,
        access_gate: AccessGate,
        tokens: TokenDirectory,
        payment_ledger: InMemoryLedger,
        fees: FeeSnapshot,
    ):
        self.address = address
        self.access_gate = access_gate
        self.payment_ledger = payment_ledger
        self.fees = fees
        self._tokens = tokens

        self.phase = SalePhase.uninitialized
        self.config: Optional[SaleConfig] = None
        self.rounds: List[Round] = []
        self.tier_grants: Dict[Pubkey, int] = {}
        self.participations: Dict[Pubkey, ParticipationRecord] = {}
        self.deposited_amount = 0
        self.settlement = SettlementState()
        self.events: List[SaleEvent] = []

    def __repr__(self) -> str:
        return f"Sale({self.address}, phase={self.phase.value})"

    # --- Guards ---

    def _require_admin(self, caller: Pubkey) -> None:
        self.access_gate.require_admin(caller)

    def _require_config(self) -> SaleConfig:
        if self.config is None:
            raise StateError("Sale is not created.")
        return self.config

    def _require_owner(self, caller: Pubkey) -> SaleConfig:
        config = self._require_config()
        if caller != config.sale_owner:
            raise AuthorizationError("Restricted to sale owner.")
        return config

    def _require_outcome(self, successful: bool) -> SaleConfig:
        """Admits only the withdrawal branch matching the settled outcome."""
        config = self._require_config()
        if successful:
            if self.phase not in _FINISHED:
                if _now() < config.sale_end:
                    raise StateError("Sale is running.")
                raise StateError("Sale is not finished.")
            if self.phase is SalePhase.cancelled:
                raise StateError("Sale was cancelled.")
        elif self.phase is not SalePhase.cancelled:
            raise StateError("Sale wasn't cancelled.")
        return config

    def _require_participant(self, caller: Pubkey) -> ParticipationRecord:
        record = self.participations.get(caller)
        if record is None:
            raise AuthorizationError("Caller did not participate in this sale.")
        if record.has_withdrawn:
            raise StateError("Already withdrawn.")
        return record

    # --- Helpers ---

    @property
    def sale_token(self) -> InMemoryLedger:
        return self._tokens.get(self._require_config().token)

    @property
    def is_created(self) -> bool:
        return self.phase is not SalePhase.uninitialized

    @property
    def tokens_deposited(self) -> bool:
        return self.deposited_amount > 0

    @property
    def sale_finished(self) -> bool:
        return self.settlement.sale_finished

    @property
    def is_sale_successful(self) -> bool:
        return self.settlement.is_successful

    def _emit(self, event: SaleEvent) -> None:
        self.events.append(event)
        logger.info(f"Sale {self.address} emitted {event.name}: {event.model_dump(mode='json', exclude={'name'})}")

    def _pay_out(self, legs: Sequence[PayoutLeg], undo: Callable[[], None]) -> None:
        """Runs every leg as one unit; if any leg fails all of them are rolled back."""
        legs = [(ledger, [(to, amount) for to, amount in payouts if amount > 0]) for ledger, payouts in legs]
        legs = [(ledger, payouts) for ledger, payouts in legs if payouts]
        if not legs:
            return
        try:
            with ExitStack() as stack:
                for ledger, _ in legs:
                    stack.enter_context(ledger.atomic())
                for ledger, payouts in legs:
                    ledger.transfer_batch(self.address, payouts)
        except Exception as e:
            undo()
            symbols = ", ".join(ledger.symbol for ledger, _ in legs)
            logger.error(f"Payout of {symbols} from sale {self.address} failed and was reverted: {e}")
            raise

    # --- Configuration ---

    def set_sale_params(
        self,
        caller: Pubkey,
        token: Pubkey,
        sale_owner: Pubkey,
        price_in_base_units: int,
        sale_end: int,
        sale_start: int,
        public_round: int,
        hard_cap: int,
        soft_cap: int,
    ) -> None:
        self._require_admin(caller)
        if self.phase is not SalePhase.uninitialized:
            raise StateError("Sale already created.")
        if is_null(token):
            raise ValidationError("setSaleParams: Token address can not be 0.")
        if is_null(sale_owner):
            raise ValidationError("Invalid sale owner address.")
        if token not in self._tokens:
            raise ValidationError(f"Unknown token {token}")
        if token == self.payment_ledger.ledger_id:
            raise ValidationError("Sale token can not be the payment currency.")
        if price_in_base_units <= 0 or hard_cap <= 0 or soft_cap <= 0 or public_round < 0:
            raise ValidationError("Invalid input.")
        if sale_end <= _now():
            raise ValidationError("Invalid input.")

        self.config = SaleConfig(
            token=token,
            sale_owner=sale_owner,
            price_in_base_units=price_in_base_units,
            sale_start=sale_start,
            sale_end=sale_end,
            public_round=public_round,
            hard_cap=hard_cap,
            soft_cap=soft_cap,
        )
        self.phase = SalePhase.configured
        self._emit(SaleCreated(
            timestamp=_now(),
            sale_owner=sale_owner,
            price_in_base_units=price_in_base_units,
            sale_end=sale_end,
            hard_cap=hard_cap,
            soft_cap=soft_cap,
        ))

    def set_rounds(self, caller: Pubkey, start_times: Sequence[int]) -> None:
        self._require_admin(caller)
        config = self._require_config()
        if self.phase is not SalePhase.configured:
            raise StateError("Rounds set already")
        rounds.validate_schedule(start_times, _now(), config.sale_end)

        self.rounds = rounds.build_schedule(start_times)
        self.phase = SalePhase.rounds_set
        for r in self.rounds:
            self._emit(RoundAdded(timestamp=_now(), tier_id=r.tier_id, start_time=r.start_time))

    def grant_a_tier_multiply(self, caller: Pubkey, identities: Sequence[Pubkey], tier_ids: Sequence[int]) -> None:
        """Grants tier_ids[i] to identities[i]; tier 0 revokes a grant."""
        self._require_admin(caller)
        if len(identities) != len(tier_ids):
            raise ValidationError("Identities and tier ids must have the same length.")
        for identity, tier_id in zip(identities, tier_ids):
            if is_null(identity):
                raise ValidationError("Can not grant a tier to the null address.")
            if tier_id < 0:
                raise ValidationError(f"Invalid tier id {tier_id}.")

        for identity, tier_id in zip(identities, tier_ids):
            self.tier_grants[identity] = tier_id
        logger.info(f"Sale {self.address}: granted tiers to {len(identities)} identities")

    def deposit_tokens(self, caller: Pubkey) -> None:
        config = self._require_owner(caller)
        if self.tokens_deposited:
            raise StateError("Tokens already deposited.")
        if self.phase in _FINISHED:
            raise StateError("Sale already finished.")

        self.sale_token.transfer_from(self.address, caller, self.address, config.hard_cap)
        self.deposited_amount = config.hard_cap
        logger.info(f"Sale {self.address}: owner deposited {config.hard_cap} sale token units")

    # --- Participation ---

    def get_current_round(self) -> int:
        if self.config is None:
            return 0
        return rounds.current_round(self.rounds, self.config.sale_end, _now())

    def status(self) -> str:
        if self.config is None:
            return self.phase.value
        if self.phase in _FINISHED:
            return self.phase.value
        if _now() >= self.config.sale_end:
            return "ended"
        current = self.get_current_round()
        return f"round {current}" if current else "not_started"

    def _check_tier(self, caller: Pubkey, requested_tier_id: int, active_round: int) -> None:
        public_round = self.config.public_round
        if public_round and active_round >= public_round:
            return
        granted = self.tier_grants.get(caller, 0)
        if granted == 0:
            raise CapacityError("Caller has no tier for this sale.")
        if requested_tier_id != granted:
            raise ValidationError(f"Requested tier {requested_tier_id} does not match granted tier {granted}.")
        if granted > active_round:
            raise CapacityError(f"Tier {granted} can not participate in round {active_round}.")

    def participate(self, caller: Pubkey, requested_tier_id: int, value: int) -> int:
        """
        Buys sale tokens for `value` base-currency units paid by the caller.

        Returns:
            The token units bought.

        Raises:
            StateError: If the sale is not created, rounds are not set, tokens are not
                deposited, the sale is finished, or the caller already participated.
            ValidationError: If the value is not positive or buys no tokens.
            CapacityError: If no round is open, the caller's tier is not admitted, or the
                purchase would exceed the hard cap.
            InsufficientFundsError: If the caller can not pay `value`.
        """
        config = self._require_config()
        if self.phase is SalePhase.configured:
            raise StateError("Rounds are not set.")
        if self.phase in _FINISHED:
            raise StateError("Sale already finished.")
        if not self.tokens_deposited:
            raise StateError("Sale tokens were not deposited.")
        if is_null(caller):
            raise ValidationError("Invalid participant address.")
        if caller in self.participations:
            raise StateError("Already participated.")
        if value <= 0:
            raise ValidationError("Can't buy 0 tokens.")

        active_round = self.get_current_round()
        if active_round == 0:
            raise CapacityError("No round is open.")
        self._check_tier(caller, requested_tier_id, active_round)

        tokens_bought = pricing.calculate_tokens_bought(value, config.price_in_base_units, self.sale_token.decimals)
        if tokens_bought == 0:
            raise ValidationError("Can't buy 0 tokens.")
        if config.total_tokens_sold + tokens_bought > config.hard_cap:
            raise CapacityError(
                f"Purchase of {tokens_bought} exceeds the hard cap; "
                f"{config.hard_cap - config.total_tokens_sold} token units remain."
            )

        self.participations[caller] = ParticipationRecord(
            tier_id_used=active_round,
            amount_bought=tokens_bought,
            amount_paid=value,
        )
        config.total_tokens_sold += tokens_bought
        config.total_base_raised += value
        try:
            self.payment_ledger.transfer(caller, self.address, value)
        except Exception:
            del self.participations[caller]
            config.total_tokens_sold -= tokens_bought
            config.total_base_raised -= value
            raise
        self._emit(TokensSold(timestamp=_now(), investor=caller, tokens_bought=tokens_bought))
        return tokens_bought

    def is_participated(self, identity: Pubkey) -> bool:
        return identity in self.participations

    def get_participation(self, identity: Pubkey) -> Optional[ParticipationRecord]:
        record = self.participations.get(identity)
        return record.model_copy() if record else None

    def get_number_of_registered_users(self) -> int:
        return len(self.participations)

    def tier_of(self, identity: Pubkey) -> int:
        return self.tier_grants.get(identity, 0)

    # --- Settlement ---

    def finish_sale(self, caller: Pubkey) -> bool:
        self._require_admin(caller)
        config = self._require_config()
        if self.phase in _FINISHED:
            raise StateError("Sale already finished.")
        if _now() < config.sale_end:
            raise StateError("Sale is running.")

        successful = config.total_tokens_sold >= config.soft_cap
        self.settlement.is_successful = successful
        self.settlement.sale_finished = True
        self.phase = SalePhase.succeeded if successful else SalePhase.cancelled
        logger.info(
            f"Sale {self.address} finished: {self.phase.value} "
            f"(sold {config.total_tokens_sold}, soft cap {config.soft_cap})"
        )
        return successful

    def withdraw(self, caller: Pubkey) -> int:
        """Transfers the caller's purchased tokens after a successful sale."""
        self._require_outcome(successful=True)
        record = self._require_participant(caller)

        record.has_withdrawn = True

        def undo():
            record.has_withdrawn = False

        self._pay_out([(self.sale_token, [(caller, record.amount_bought)])], undo)
        self._emit(TokensWithdrawn(timestamp=_now(), investor=caller, tokens_bought=record.amount_bought))
        return record.amount_bought

    def _settle_owner(self, config: SaleConfig, earnings: bool, leftover: bool, burn: bool) -> None:
        """
        Pays whichever owner-side halves are requested as a single unit.

        Both flags are set before any transfer. If any leg fails, every leg is rolled
        back and both flags are restored.
        """
        fee_amount, owner_amount = pricing.split_earnings(config.total_base_raised, self.fees.fee_rate_bps)
        leftover_amount = pricing.calculate_leftover(self.deposited_amount, config.total_tokens_sold)
        destination = BURN_ADDRESS if burn else config.sale_owner

        legs: List[PayoutLeg] = []
        if earnings:
            self.settlement.earnings_withdrawn = True
            legs.append((self.payment_ledger, [(self.fees.fee_recipient, fee_amount), (config.sale_owner, owner_amount)]))
        if leftover:
            self.settlement.leftover_withdrawn = True
            legs.append((self.sale_token, [(destination, leftover_amount)]))

        def undo():
            if earnings:
                self.settlement.earnings_withdrawn = False
            if leftover:
                self.settlement.leftover_withdrawn = False

        self._pay_out(legs, undo)
        if earnings:
            self._emit(EarningsWithdrawn(timestamp=_now(), owner_amount=owner_amount, fee_amount=fee_amount))
        if leftover:
            self._emit(LeftoverWithdrawn(timestamp=_now(), destination=destination, amount=leftover_amount))

    def withdraw_earnings(self, caller: Pubkey) -> None:
        config = self._require_owner(caller)
        self._require_outcome(successful=True)
        if self.settlement.earnings_withdrawn:
            raise StateError("Earnings already withdrawn.")
        self._settle_owner(config, earnings=True, leftover=False, burn=False)

    def withdraw_leftover(self, caller: Pubkey, burn: bool = False) -> None:
        config = self._require_owner(caller)
        self._require_outcome(successful=True)
        if self.settlement.leftover_withdrawn:
            raise StateError("Leftover already withdrawn.")
        self._settle_owner(config, earnings=False, leftover=True, burn=burn)

    def withdraw_earnings_and_leftover(self, caller: Pubkey, burn: bool = False) -> None:
        config = self._require_owner(caller)
        self._require_outcome(successful=True)
        if self.settlement.earnings_withdrawn and self.settlement.leftover_withdrawn:
            raise StateError("Earnings and leftover already withdrawn.")
        self._settle_owner(
            config,
            earnings=not self.settlement.earnings_withdrawn,
            leftover=not self.settlement.leftover_withdrawn,
            burn=burn,
        )

    def withdraw_user_funds_if_sale_cancelled(self, caller: Pubkey) -> int:
        """Refunds the caller's base-currency payment after a cancelled sale."""
        self._require_outcome(successful=False)
        record = self._require_participant(caller)

        record.has_withdrawn = True

        def undo():
            record.has_withdrawn = False

        self._pay_out([(self.payment_ledger, [(caller, record.amount_paid)])], undo)
        self._emit(FundsRefunded(timestamp=_now(), investor=caller, amount=record.amount_paid))
        return record.amount_paid

    def withdraw_deposited_tokens_if_sale_cancelled(self, caller: Pubkey) -> int:
        config = self._require_owner(caller)
        self._require_outcome(successful=False)
        if not self.tokens_deposited:
            raise StateError("Sale tokens were not deposited")
        if self.settlement.deposit_reclaimed:
            raise StateError("Deposited tokens already withdrawn.")

        self.settlement.deposit_reclaimed = True

        def undo():
            self.settlement.deposit_reclaimed = False

        self._pay_out([(self.sale_token, [(config.sale_owner, self.deposited_amount)])], undo)
        logger.info(f"Sale {self.address}: owner reclaimed {self.deposited_amount} deposited token units")
        return self.deposited_amount

    def remove_stuck_tokens(self, caller: Pubkey, token: Pubkey, destination: Pubkey) -> int:
        """Sweeps the sale's whole balance of an unrelated token to destination."""
        is_owner = self.config is not None and caller == self.config.sale_owner
        if not (self.access_gate.is_admin(caller) or is_owner):
            raise AuthorizationError("Only admin or sale owner can call this function.")
        if self.config is not None and token == self.config.token:
            raise ValidationError("Can't withdraw sale token.")
        if token == self.payment_ledger.ledger_id:
            raise ValidationError("Can't withdraw payment token.")
        if is_null(destination):
            raise ValidationError("Invalid destination address.")
        ledger = self._tokens.get(token)

        amount = ledger.balance_of(self.address)
        if amount:
            ledger.transfer(self.address, destination, amount)
        logger.info(f"Sale {self.address}: removed {amount} stuck {ledger.symbol} to {destination}")
        return amount

    def snapshot(self) -> SaleSnapshot:
        return SaleSnapshot(
            address=self.address,
            payment_ledger=str(self.payment_ledger.ledger_id),
            phase=self.phase,
            config=self.config.model_copy() if self.config else None,
            rounds=list(self.rounds),
            tier_grants={str(k): v for k, v in self.tier_grants.items()},
            participations={str(k): v.model_copy() for k, v in self.participations.items()},
            is_created=self.is_created,
            tokens_deposited=self.tokens_deposited,
            settlement=self.settlement.model_copy(),
            fees=self.fees,
        )
