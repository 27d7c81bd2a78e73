import pytest

from mcp_sale_escrow.errors import CapacityError, InsufficientFundsError, StateError, ValidationError
from mcp_sale_escrow.schemas import TokensSold
from tests.conftest import (
    FIRST_ROUND,
    HARD_CAP,
    INITIAL_BALANCE,
    LAST_ROUND,
    PARTICIPATION_VALUE,
    ROUNDS_START_DELTAS,
    SALE_END_DELTA,
)


def test_participate_in_first_round(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])

    bought = harness.participate()

    config = harness.sale.config
    record = harness.sale.get_participation(harness.deployer)
    assert bought == PARTICIPATION_VALUE
    assert config.total_tokens_sold == PARTICIPATION_VALUE
    assert config.total_base_raised == PARTICIPATION_VALUE
    assert harness.sale.is_participated(harness.deployer)
    assert record.amount_bought == PARTICIPATION_VALUE
    assert record.amount_paid == PARTICIPATION_VALUE
    assert record.tier_id_used == FIRST_ROUND
    assert not record.has_withdrawn
    assert harness.sale.get_number_of_registered_users() == 1
    assert harness.native.balance_of(harness.sale.address) == PARTICIPATION_VALUE
    assert harness.native.balance_of(harness.deployer) == INITIAL_BALANCE - PARTICIPATION_VALUE


def test_multiple_users_participate_in_later_round(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[2])

    harness.participate()
    harness.participate(sender=harness.alice)

    config = harness.sale.config
    assert config.total_tokens_sold == 2 * PARTICIPATION_VALUE
    assert config.total_base_raised == 2 * PARTICIPATION_VALUE
    for investor in (harness.deployer, harness.alice):
        record = harness.sale.get_participation(investor)
        assert record.amount_bought == PARTICIPATION_VALUE
        assert record.tier_id_used == 3
    assert harness.sale.get_number_of_registered_users() == 2


def test_can_not_participate_twice(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])
    harness.participate()

    with pytest.raises(StateError, match="Already participated."):
        harness.participate()
    assert harness.sale.config.total_tokens_sold == PARTICIPATION_VALUE


def test_can_not_participate_before_first_round(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0] - 1)

    with pytest.raises(CapacityError, match="No round is open."):
        harness.participate()


def test_can_not_participate_after_sale_end(harness):
    harness.full_setup()
    harness.at(SALE_END_DELTA)

    with pytest.raises(CapacityError, match="No round is open."):
        harness.participate()


def test_identity_without_tier_can_not_participate(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[4])

    with pytest.raises(CapacityError):
        harness.participate(sender=harness.cedric, tier=0)
    assert not harness.sale.is_participated(harness.cedric)


def test_higher_tier_waits_for_its_round(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])

    with pytest.raises(CapacityError):
        harness.participate(sender=harness.bob, tier=LAST_ROUND)

    harness.at(ROUNDS_START_DELTAS[2])
    harness.participate(sender=harness.bob, tier=LAST_ROUND)
    assert harness.sale.get_participation(harness.bob).tier_id_used == LAST_ROUND


def test_requested_tier_must_match_grant(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[2])

    with pytest.raises(ValidationError, match="does not match granted tier"):
        harness.participate(sender=harness.alice, tier=2)


def test_public_round_admits_everyone(harness):
    harness.full_setup(public_round=2)
    harness.at(ROUNDS_START_DELTAS[0])
    with pytest.raises(CapacityError):
        harness.participate(sender=harness.cedric, tier=0)

    harness.at(ROUNDS_START_DELTAS[1])
    harness.participate(sender=harness.cedric, tier=0)

    assert harness.sale.get_participation(harness.cedric).tier_id_used == 2


def test_can_not_participate_without_deposit(harness):
    harness.full_setup(deposit=False)
    harness.at(ROUNDS_START_DELTAS[0])

    with pytest.raises(StateError, match="Sale tokens were not deposited."):
        harness.participate()


def test_can_not_participate_before_rounds_are_set(harness):
    harness.set_sale_params()
    harness.deposit_tokens()
    harness.grant_tiers()

    with pytest.raises(StateError, match="Rounds are not set."):
        harness.participate()


@pytest.mark.parametrize("value", [0, -5])
def test_can_not_buy_zero_tokens(harness, value):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])

    with pytest.raises(ValidationError):
        harness.participate(value=value)
    assert harness.sale.get_number_of_registered_users() == 0


def test_payment_too_small_for_one_token_unit(harness):
    harness.full_setup(price=10 ** 10)
    harness.at(ROUNDS_START_DELTAS[0])

    with pytest.raises(ValidationError, match="Can't buy 0 tokens."):
        harness.participate(value=9)


def test_purchase_crossing_hard_cap_is_rejected(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])
    harness.participate(value=HARD_CAP - 100)

    with pytest.raises(CapacityError, match="exceeds the hard cap"):
        harness.participate(sender=harness.alice, value=101)

    harness.participate(sender=harness.alice, value=100)
    assert harness.sale.config.total_tokens_sold == HARD_CAP
    assert harness.native.balance_of(harness.alice) == INITIAL_BALANCE - 100


def test_rejected_payment_leaves_no_record(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])
    harness.native.transfer(harness.alice, harness.cedric, INITIAL_BALANCE - 10)

    with pytest.raises(InsufficientFundsError):
        harness.participate(sender=harness.alice)

    assert not harness.sale.is_participated(harness.alice)
    assert harness.sale.config.total_tokens_sold == 0
    assert harness.sale.config.total_base_raised == 0
    assert harness.native.balance_of(harness.alice) == 10


def test_participation_is_recorded_before_payment_arrives(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])
    observed = []
    harness.native.on_receive(
        harness.sale.address,
        lambda sender, amount: observed.append(
            (harness.sale.is_participated(sender), harness.sale.config.total_base_raised)
        ),
    )

    harness.participate(sender=harness.alice)

    assert observed == [(True, PARTICIPATION_VALUE)]


def test_failed_payment_removes_participation(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])
    harness.participate()

    def reject(sender, amount):
        raise RuntimeError("payment rejected")

    harness.native.on_receive(harness.sale.address, reject)

    with pytest.raises(RuntimeError):
        harness.participate(sender=harness.alice)
    assert not harness.sale.is_participated(harness.alice)
    assert harness.sale.config.total_tokens_sold == PARTICIPATION_VALUE
    assert harness.sale.config.total_base_raised == PARTICIPATION_VALUE
    assert harness.native.balance_of(harness.alice) == INITIAL_BALANCE

    harness.native.on_receive(harness.sale.address, None)
    harness.participate(sender=harness.alice)
    assert harness.sale.get_number_of_registered_users() == 2


def test_participation_emits_tokens_sold(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])

    harness.participate()

    event = harness.sale.events[-1]
    assert isinstance(event, TokensSold)
    assert (event.investor, event.tokens_bought) == (harness.deployer, PARTICIPATION_VALUE)


def test_tokens_sold_matches_participation_records(harness):
    harness.full_setup()
    harness.at(ROUNDS_START_DELTAS[0])
    harness.participate(value=150)
    harness.participate(sender=harness.alice, value=200)
    harness.at(ROUNDS_START_DELTAS[2])
    harness.participate(sender=harness.bob, value=300, tier=LAST_ROUND)

    records = harness.sale.participations.values()
    config = harness.sale.config
    assert config.total_tokens_sold == sum(r.amount_bought for r in records) == 650
    assert config.total_base_raised == sum(r.amount_paid for r in records) == 650
    assert config.total_tokens_sold <= config.hard_cap


# --- Current round ---

@pytest.mark.parametrize(
    "delta, expected",
    [
        (0, 0),
        (ROUNDS_START_DELTAS[0] - 1, 0),
        (ROUNDS_START_DELTAS[0], 1),
        (ROUNDS_START_DELTAS[0] + 5, 1),
        (ROUNDS_START_DELTAS[1], 2),
        (ROUNDS_START_DELTAS[2], 3),
        (ROUNDS_START_DELTAS[3], 4),
        (ROUNDS_START_DELTAS[4], 5),
        (SALE_END_DELTA - 1, 5),
        (SALE_END_DELTA, 0),
        (SALE_END_DELTA + 1000, 0),
    ],
)
def test_get_current_round(harness, delta, expected):
    harness.full_setup()
    harness.at(delta)

    assert harness.sale.get_current_round() == expected


def test_current_round_is_zero_without_rounds(harness):
    assert harness.sale.get_current_round() == 0
    harness.set_sale_params()
    harness.at(ROUNDS_START_DELTAS[0])
    assert harness.sale.get_current_round() == 0


def test_status_follows_the_clock(harness):
    assert harness.sale.status() == "uninitialized"
    harness.full_setup()
    assert harness.sale.status() == "not_started"
    harness.at(ROUNDS_START_DELTAS[1])
    assert harness.sale.status() == "round 2"
    harness.at(SALE_END_DELTA)
    assert harness.sale.status() == "ended"
