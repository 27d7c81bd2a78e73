"""
In-Memory Fungible Ledgers

Sales move value through two kinds of collaborators: token ledgers (the sale token, any
token swept out with remove_stuck_tokens, and the payment token of token-denominated
sales) and the native base-currency ledger. Both expose the same interface here:

- balance_of / transfer / approve / allowance / transfer_from
- on_receive: registers code that runs when an identity is credited
- atomic: a block whose balance and allowance writes are all undone if it raises

Receiver hooks run after the credit has been applied, so a hook that calls back into a
sale observes the sale exactly as it stands mid-operation. A transfer is atomic: if the
hook raises, every write made since the transfer began (including writes the hook made
on this ledger) is restored and the error propagates to the sender.
"""
from contextlib import contextmanager
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple

from solders.pubkey import Pubkey
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_sale_escrow.errors import InsufficientFundsError, ValidationError

logger = get_logger(__name__)

ReceiveHook = Callable[[Pubkey, int], None]


class InMemoryLedger:
    def __init__(self, symbol: str, decimals: int, ledger_id: Optional[Pubkey] = None):
        if decimals < 0 or decimals > 18:
            raise ValidationError("Ledger decimals must be between 0 and 18")
        self.symbol = symbol
        self.decimals = decimals
        self.ledger_id = ledger_id or Pubkey.new_unique()
        self._balances: Dict[Pubkey, int] = {}
        self._allowances: Dict[Tuple[Pubkey, Pubkey], int] = {}
        self._hooks: Dict[Pubkey, ReceiveHook] = {}
        # One journal per open atomic block: (table, key) -> value before the block.
        self._journals: List[Dict[Tuple[str, Hashable], Optional[int]]] = []

    def __repr__(self) -> str:
        return f"InMemoryLedger({self.symbol}, {self.ledger_id})"

    # --- Journaled writes ---

    def _table(self, name: str) -> dict:
        return self._balances if name == "balance" else self._allowances

    def _write(self, name: str, key: Hashable, value: int) -> None:
        table = self._table(name)
        if self._journals:
            self._journals[-1].setdefault((name, key), table.get(key))
        table[key] = value

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Runs a block whose writes to this ledger are rolled back if it raises."""
        journal: Dict[Tuple[str, Hashable], Optional[int]] = {}
        self._journals.append(journal)
        try:
            yield
        except Exception:
            self._journals.pop()
            for (name, key), previous in journal.items():
                table = self._table(name)
                if previous is None:
                    table.pop(key, None)
                else:
                    table[key] = previous
            logger.debug(f"Rolled back {len(journal)} {self.symbol} ledger write(s)")
            raise
        self._journals.pop()
        if self._journals:
            parent = self._journals[-1]
            for entry, previous in journal.items():
                parent.setdefault(entry, previous)

    # --- Balances ---

    def balance_of(self, owner: Pubkey) -> int:
        return self._balances.get(owner, 0)

    def mint(self, to: Pubkey, amount: int) -> None:
        if amount <= 0:
            raise ValidationError("Mint amount must be positive")
        self._write("balance", to, self.balance_of(to) + amount)
        logger.debug(f"Minted {amount} {self.symbol} to {to}")

    def on_receive(self, identity: Pubkey, hook: Optional[ReceiveHook]) -> None:
        """Register (or clear, with None) code executed when identity is credited."""
        if hook is None:
            self._hooks.pop(identity, None)
        else:
            self._hooks[identity] = hook

    def transfer(self, sender: Pubkey, to: Pubkey, amount: int) -> None:
        self.transfer_batch(sender, [(to, amount)])

    def transfer_batch(self, sender: Pubkey, payouts: Sequence[Tuple[Pubkey, int]]) -> None:
        """
        Moves several amounts out of one account as a single unit.

        All credits are applied before any receiver hook runs. If a hook raises, the
        batch and anything the hooks did on this ledger are rolled back before the
        error propagates.
        """
        if any(amount < 0 for _, amount in payouts):
            raise ValidationError("Transfer amount can not be negative")
        total = sum(amount for _, amount in payouts)
        balance = self.balance_of(sender)
        if balance < total:
            raise InsufficientFundsError(
                f"Insufficient {self.symbol} balance for {sender}. Required: {total}. Available: {balance}"
            )
        with self.atomic():
            self._write("balance", sender, balance - total)
            for to, amount in payouts:
                self._write("balance", to, self.balance_of(to) + amount)
                logger.debug(f"Transferred {amount} {self.symbol} from {sender} to {to}")

            for to, amount in payouts:
                hook = self._hooks.get(to)
                if hook is not None:
                    hook(sender, amount)

    # --- Allowances ---

    def approve(self, owner: Pubkey, spender: Pubkey, amount: int) -> None:
        if amount < 0:
            raise ValidationError("Allowance can not be negative")
        self._write("allowance", (owner, spender), amount)

    def allowance(self, owner: Pubkey, spender: Pubkey) -> int:
        return self._allowances.get((owner, spender), 0)

    def transfer_from(self, spender: Pubkey, owner: Pubkey, to: Pubkey, amount: int) -> None:
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise InsufficientFundsError(
                f"Insufficient {self.symbol} allowance from {owner} to {spender}. Required: {amount}. Approved: {allowed}"
            )
        with self.atomic():
            self._write("allowance", (owner, spender), allowed - amount)
            self.transfer(owner, to, amount)


class TokenDirectory:
    """Token ledgers addressable by their ledger id."""

    def __init__(self, *ledgers: InMemoryLedger):
        self._ledgers: Dict[Pubkey, InMemoryLedger] = {}
        for ledger in ledgers:
            self.register(ledger)

    def __contains__(self, ledger_id: object) -> bool:
        return ledger_id in self._ledgers

    def register(self, ledger: InMemoryLedger) -> InMemoryLedger:
        if ledger.ledger_id in self._ledgers:
            raise ValidationError(f"Token {ledger.ledger_id} is already registered")
        self._ledgers[ledger.ledger_id] = ledger
        logger.info(f"Registered token ledger {ledger.symbol} ({ledger.ledger_id})")
        return ledger

    def get(self, ledger_id: Pubkey) -> InMemoryLedger:
        ledger = self._ledgers.get(ledger_id)
        if ledger is None:
            raise ValidationError(f"Unknown token {ledger_id}")
        return ledger
