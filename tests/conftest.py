import pytest
from unittest.mock import patch
from solders.keypair import Keypair

from mcp_sale_escrow.access import AccessGate
from mcp_sale_escrow.ledger import InMemoryLedger, TokenDirectory
from mcp_sale_escrow.registry import SaleRegistry

START_TIME = 1710000000
DECIMALS = 9
TOKEN_PRICE = 10 ** DECIMALS  # one base unit per token unit
HARD_CAP = 1000
SOFT_CAP = 100
SALE_END_DELTA = 130
SALE_START_DELTA = 10
PUBLIC_ROUND = 10
ROUNDS_START_DELTAS = [50, 70, 90, 100, 110]
FIRST_ROUND = 1
LAST_ROUND = 3
SERVICE_FEE_BPS = 100
PARTICIPATION_VALUE = 150
INITIAL_BALANCE = 10 ** 6


class Clock:
    """Stands in for time.time so tests can move the sale through its rounds."""

    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class SaleHarness:
    """One registry with one deployed sale, mirroring a typical admin setup."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self.created_at = clock.now
        self.deployer, self.alice, self.bob, self.cedric = (Keypair().pubkey() for _ in range(4))

        self.native = InMemoryLedger("SOL", 9)
        self.sale_token = InMemoryLedger("MMT", DECIMALS)
        self.tokens = TokenDirectory(self.sale_token)
        self.gate = AccessGate([self.deployer, self.alice, self.bob])
        self.registry = SaleRegistry(self.gate, self.tokens, self.native)
        self.registry.set_fee_recipient(self.deployer, self.cedric)
        self.registry.set_fee_rate(self.deployer, SERVICE_FEE_BPS)
        self.sale = self.registry.get_sale(self.registry.deploy_sale(self.deployer))

        self.sale_token.mint(self.deployer, INITIAL_BALANCE)
        for account in (self.deployer, self.alice, self.bob, self.cedric):
            self.native.mint(account, INITIAL_BALANCE)

    def at(self, delta: int) -> None:
        """Moves the clock to `delta` seconds after the sale was created."""
        self.clock.now = self.created_at + delta

    def set_sale_params(self, **params):
        now = self.clock.now
        return self.sale.set_sale_params(
            params.get("caller", self.deployer),
            params.get("token", self.sale_token.ledger_id),
            params.get("sale_owner", self.deployer),
            params.get("price", TOKEN_PRICE),
            now + params.get("sale_end_delta", SALE_END_DELTA),
            now + SALE_START_DELTA,
            params.get("public_round", PUBLIC_ROUND),
            params.get("hard_cap", HARD_CAP),
            params.get("soft_cap", SOFT_CAP),
        )

    def set_rounds(self, deltas=None, caller=None):
        deltas = ROUNDS_START_DELTAS if deltas is None else deltas
        return self.sale.set_rounds(caller or self.deployer, [self.clock.now + d for d in deltas])

    def grant_tiers(self):
        self.sale.grant_a_tier_multiply(
            self.deployer,
            [self.deployer, self.alice, self.bob],
            [FIRST_ROUND, FIRST_ROUND, LAST_ROUND],
        )

    def deposit_tokens(self):
        owner = self.sale.config.sale_owner
        self.sale_token.approve(owner, self.sale.address, self.sale.config.hard_cap)
        self.sale.deposit_tokens(owner)

    def full_setup(self, deposit: bool = True, **params):
        self.set_sale_params(**params)
        self.set_rounds()
        if deposit:
            self.deposit_tokens()
        self.grant_tiers()

    def participate(self, sender=None, value=PARTICIPATION_VALUE, tier=FIRST_ROUND):
        return self.sale.participate(sender or self.deployer, tier, value)


@pytest.fixture
def clock():
    fake = Clock(START_TIME)
    with patch("time.time", new=fake):
        yield fake


@pytest.fixture
def harness(clock):
    return SaleHarness(clock)
