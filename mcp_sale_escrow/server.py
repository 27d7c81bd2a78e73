"""
Sale Escrow Server - MCP Server Implementation

This module exposes the sale registry and the sale lifecycle as MCP tools. The server
hosts one registry (with its access gate, native ledger and token directory, built by
create_registry from the environment); every tool takes the calling identity explicitly
as a base58 public key.

Tools:
- register_token / fund_account: host the ledgers sales trade in (admin)
- approve_tokens / get_balance: allowances and balances on the hosted ledgers
- deploy_sale: deploy a new sale (admin)
- set_sale_params / set_rounds / grant_tiers: configure a sale (admin)
- deposit_tokens: escrow the hard cap of sale tokens (sale owner)
- participate: buy tokens in the open round
- finish_sale: settle the sale once it has ended (admin)
- withdraw_tokens / withdraw_earnings_and_leftover: success-path withdrawals
- claim_refund / reclaim_deposit: cancellation-path withdrawals
- get_sale_info / get_current_round: read-only views

Error Handling:
- Rejected operations return the rejection reason as the tool result
- Malformed input (bad public keys, negative numbers) returns a generic input error
- Unexpected failures are logged with a traceback and return a generic message
"""

import json
import time
from typing import Annotated, Callable, Iterable, List, Optional

from pydantic import Field
from solders.pubkey import Pubkey

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_sale_escrow import config
from mcp_sale_escrow.access import AccessGate
from mcp_sale_escrow.errors import SaleError
from mcp_sale_escrow.ledger import InMemoryLedger, TokenDirectory
from mcp_sale_escrow.registry import SaleRegistry
from mcp_sale_escrow.sale import Sale

logger = get_logger(__name__)

MAX_ID_LENGTH = 64
MAX_BATCH_SIZE = 500

# --- Server Setup ---
mcp = FastMCP(name="Sale Escrow Server")


def create_registry(admins: Optional[Iterable[Pubkey]] = None) -> SaleRegistry:
    """Build the hosted registry with its access gate, native ledger and token directory."""
    access_gate = AccessGate(config.ADMIN_ADDRESSES if admins is None else admins)
    native_currency = InMemoryLedger(config.NATIVE_SYMBOL, config.NATIVE_DECIMALS)
    return SaleRegistry(
        access_gate,
        TokenDirectory(),
        native_currency,
        fee_rate_bps=config.DEFAULT_FEE_RATE_BPS,
        fee_recipient=config.DEFAULT_FEE_RECIPIENT,
    )


registry = create_registry()


def parse_pubkey(value: str, name: str) -> Pubkey:
    """Parse a base58 public key argument, raising ValueError with the argument name."""
    if not value or not isinstance(value, str):
        raise ValueError(f"{name} must be a non-empty string")
    if len(value) > MAX_ID_LENGTH:
        raise ValueError(f"{name} is too long")
    try:
        return Pubkey.from_string(value.strip())
    except Exception as e:
        raise ValueError(f"{name} is not a valid public key: {e}")


def format_token_amount(amount: int, decimals: int, symbol: str) -> str:
    """Format token amount with proper decimal places and symbol."""
    whole, fraction = divmod(amount, 10 ** decimals)
    if decimals == 0:
        return f"{whole} {symbol}"
    return f"{whole}.{fraction:0{decimals}d} {symbol}"


def log_operation_error(operation: str, target: str, error: Exception, duration: float) -> None:
    """Log operation error with structured information."""
    logger.error(f"{operation} failed for '{target}': {error}, duration: {duration:.3f}s")


def run_operation(operation: str, target: str, action: Callable[[], str]) -> str:
    """Run the action and turn failures into tool results."""
    start_time = time.time()
    try:
        result = action()
        logger.info(f"{operation} completed for '{target}', duration: {time.time() - start_time:.3f}s")
        return result
    except SaleError as e:
        log_operation_error(operation, target, e, time.time() - start_time)
        return str(e)
    except ValueError as e:
        log_operation_error(operation, target, e, time.time() - start_time)
        return f"Error processing request: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error during {operation} for '{target}': {e}")
        return "An unexpected server error occurred"


def run_sale_operation(operation: str, sale_id: str, action: Callable[[Sale], str]) -> str:
    """Resolve the sale, then run the action on it."""
    return run_operation(operation, sale_id, lambda: action(registry.get_sale(parse_pubkey(sale_id, "Sale"))))


def resolve_ledger(token: Optional[str]) -> InMemoryLedger:
    """The registered token ledger for `token`, or the native currency when omitted."""
    if not token:
        return registry.base_currency
    return registry.tokens.get(parse_pubkey(token, "Token"))


# --- Registry Tools ---

@mcp.tool()
async def deploy_sale(
    context: Context,
    caller: str = Field(..., description="Public key of the calling admin."),
    payment_token: Annotated[Optional[str], Field(description="Token the sale is paid in; native currency if omitted.")] = None,
) -> str:
    """Deploys a new sale with the registry's current fee parameters."""
    try:
        caller_key = parse_pubkey(caller, "Caller")
        payment_key = parse_pubkey(payment_token, "Payment token") if payment_token else None
        handle = registry.deploy_sale(caller_key, payment_token=payment_key)
        return f"Sale deployed at {handle} (#{registry.get_number_of_sales() - 1})."
    except SaleError as e:
        logger.warning(f"deploy_sale rejected for caller {caller}: {e}")
        return str(e)
    except ValueError as e:
        logger.error(f"Invalid input to deploy_sale: {e}")
        return f"Error processing request: {e}"
    except Exception as e:
        logger.exception(f"Unexpected error deploying sale: {e}")
        return "An unexpected server error occurred"


# --- Ledger Tools ---

@mcp.tool()
async def register_token(
    context: Context,
    caller: str = Field(..., description="Public key of the calling admin."),
    symbol: str = Field(..., description="Token symbol."),
    decimals: int = Field(..., description="Token decimals (0-18)."),
) -> str:
    """Registers a new token ledger that sales can sell or be paid in."""
    def action() -> str:
        registry.access_gate.require_admin(parse_pubkey(caller, "Caller"))
        ledger = registry.tokens.register(InMemoryLedger(symbol, decimals))
        return f"Registered {symbol} ledger {ledger.ledger_id}."

    return run_operation("Register token", symbol, action)


@mcp.tool()
async def fund_account(
    context: Context,
    caller: str = Field(..., description="Public key of the calling admin."),
    account: str = Field(..., description="Public key credited with the new units."),
    amount: int = Field(..., description="Amount in the ledger's smallest unit."),
    token: Annotated[Optional[str], Field(description="Token ledger id; native currency if omitted.")] = None,
) -> str:
    """Mints units of a hosted ledger into an account."""
    def action() -> str:
        registry.access_gate.require_admin(parse_pubkey(caller, "Caller"))
        ledger = resolve_ledger(token)
        ledger.mint(parse_pubkey(account, "Account"), amount)
        return f"Funded {account} with {format_token_amount(amount, ledger.decimals, ledger.symbol)}."

    return run_operation("Fund account", account, action)


@mcp.tool()
async def approve_tokens(
    context: Context,
    caller: str = Field(..., description="Public key of the token owner."),
    spender: str = Field(..., description="Public key (or sale address) allowed to spend."),
    amount: int = Field(..., description="Allowance in the ledger's smallest unit."),
    token: Annotated[Optional[str], Field(description="Token ledger id; native currency if omitted.")] = None,
) -> str:
    """Sets the caller's allowance for a spender, e.g. a sale pulling its deposit."""
    def action() -> str:
        ledger = resolve_ledger(token)
        ledger.approve(parse_pubkey(caller, "Caller"), parse_pubkey(spender, "Spender"), amount)
        return f"Approved {spender} to spend {format_token_amount(amount, ledger.decimals, ledger.symbol)}."

    return run_operation("Approve", caller, action)


@mcp.tool()
async def get_balance(
    context: Context,
    account: str = Field(..., description="Public key to look up."),
    token: Annotated[Optional[str], Field(description="Token ledger id; native currency if omitted.")] = None,
) -> str:
    """Returns an account's balance on a hosted ledger."""
    def action() -> str:
        ledger = resolve_ledger(token)
        balance = ledger.balance_of(parse_pubkey(account, "Account"))
        return format_token_amount(balance, ledger.decimals, ledger.symbol)

    return run_operation("Balance", account, action)


# --- Sale Info Tools ---

@mcp.tool()
async def get_sale_info(context: Context, sale: str = Field(..., description="The sale address.")) -> str:
    """Returns every persisted field of a sale as JSON, plus its current status."""
    def action(s: Sale) -> str:
        info = s.snapshot().model_dump(mode="json")
        info["status"] = s.status()
        info["current_round"] = s.get_current_round()
        return json.dumps(info, indent=2)

    return run_sale_operation("Sale info", sale, action)


@mcp.tool()
async def get_current_round(context: Context, sale: str = Field(..., description="The sale address.")) -> str:
    """Returns the tier id of the open round, 0 when no round is open."""
    return run_sale_operation("Current round", sale, lambda s: str(s.get_current_round()))


# --- Configuration Tools ---

@mcp.tool()
async def set_sale_params(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the calling admin."),
    token: str = Field(..., description="Sale token ledger id."),
    sale_owner: str = Field(..., description="Public key of the sale owner."),
    price_in_base_units: int = Field(..., description="Base-currency units per whole sale token."),
    sale_end: int = Field(..., description="Sale end (Unix timestamp)."),
    sale_start: int = Field(..., description="Sale start (Unix timestamp)."),
    public_round: int = Field(..., description="First round open to every identity; 0 for none."),
    hard_cap: int = Field(..., description="Maximum token units sold."),
    soft_cap: int = Field(..., description="Minimum token units sold for success."),
) -> str:
    """Sets the sale parameters. Can only be done once."""
    def action(s: Sale) -> str:
        s.set_sale_params(
            parse_pubkey(caller, "Caller"),
            parse_pubkey(token, "Token"),
            parse_pubkey(sale_owner, "Sale owner"),
            price_in_base_units, sale_end, sale_start, public_round, hard_cap, soft_cap,
        )
        return f"Sale parameters set for {s.address}."

    return run_sale_operation("Set sale params", sale, action)


@mcp.tool()
async def set_rounds(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the calling admin."),
    start_times: List[int] = Field(..., description="Strictly ascending round start times."),
) -> str:
    """Sets the round schedule; round i admits tier i."""
    def action(s: Sale) -> str:
        s.set_rounds(parse_pubkey(caller, "Caller"), start_times)
        return f"{len(s.rounds)} round(s) set for {s.address}."

    return run_sale_operation("Set rounds", sale, action)


@mcp.tool()
async def grant_tiers(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the calling admin."),
    identities: List[str] = Field(..., description="Investor public keys."),
    tier_ids: List[int] = Field(..., description="Tier granted to each investor."),
) -> str:
    """Grants tiers to investors; later grants overwrite earlier ones."""
    def action(s: Sale) -> str:
        if len(identities) > MAX_BATCH_SIZE:
            raise ValueError(f"At most {MAX_BATCH_SIZE} grants per call")
        keys = [parse_pubkey(identity, "Identity") for identity in identities]
        s.grant_a_tier_multiply(parse_pubkey(caller, "Caller"), keys, tier_ids)
        return f"Granted tiers to {len(keys)} identities."

    return run_sale_operation("Grant tiers", sale, action)


@mcp.tool()
async def deposit_tokens(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the sale owner."),
) -> str:
    """Pulls the hard cap of sale tokens from the owner's approved allowance."""
    def action(s: Sale) -> str:
        s.deposit_tokens(parse_pubkey(caller, "Caller"))
        token = s.sale_token
        return f"Deposited {format_token_amount(s.deposited_amount, token.decimals, token.symbol)}."

    return run_sale_operation("Deposit tokens", sale, action)


# --- Participation & Settlement Tools ---

@mcp.tool()
async def participate(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the investor."),
    tier_id: int = Field(..., description="The investor's granted tier."),
    value: int = Field(..., description="Payment in base-currency units."),
) -> str:
    """Buys sale tokens in the currently open round."""
    def action(s: Sale) -> str:
        bought = s.participate(parse_pubkey(caller, "Caller"), tier_id, value)
        token = s.sale_token
        return (f"Successfully purchased {format_token_amount(bought, token.decimals, token.symbol)} "
                f"for {value} {s.payment_ledger.symbol} base units.")

    return run_sale_operation("Participation", sale, action)


@mcp.tool()
async def finish_sale(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the calling admin."),
) -> str:
    """Settles an ended sale as successful or cancelled."""
    def action(s: Sale) -> str:
        successful = s.finish_sale(parse_pubkey(caller, "Caller"))
        return "Sale finished: successful." if successful else "Sale finished: cancelled."

    return run_sale_operation("Finish sale", sale, action)


@mcp.tool()
async def withdraw_tokens(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the investor."),
) -> str:
    """Claims purchased tokens after a successful sale."""
    def action(s: Sale) -> str:
        amount = s.withdraw(parse_pubkey(caller, "Caller"))
        token = s.sale_token
        return f"Withdrew {format_token_amount(amount, token.decimals, token.symbol)}."

    return run_sale_operation("Token withdrawal", sale, action)


@mcp.tool()
async def withdraw_earnings_and_leftover(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the sale owner."),
    burn: Annotated[bool, Field(description="Send leftover tokens to the burn address.")] = False,
) -> str:
    """Pays the owner's earnings (minus service fee) and the unsold leftover."""
    def action(s: Sale) -> str:
        s.withdraw_earnings_and_leftover(parse_pubkey(caller, "Caller"), burn=burn)
        return "Earnings and leftover withdrawn."

    return run_sale_operation("Earnings withdrawal", sale, action)


@mcp.tool()
async def claim_refund(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the investor."),
) -> str:
    """Refunds the investor's payment after a cancelled sale."""
    def action(s: Sale) -> str:
        amount = s.withdraw_user_funds_if_sale_cancelled(parse_pubkey(caller, "Caller"))
        currency = s.payment_ledger
        return f"Refunded {format_token_amount(amount, currency.decimals, currency.symbol)}."

    return run_sale_operation("Refund", sale, action)


@mcp.tool()
async def reclaim_deposit(
    context: Context,
    sale: str = Field(..., description="The sale address."),
    caller: str = Field(..., description="Public key of the sale owner."),
) -> str:
    """Returns the deposited sale tokens to the owner after a cancelled sale."""
    def action(s: Sale) -> str:
        amount = s.withdraw_deposited_tokens_if_sale_cancelled(parse_pubkey(caller, "Caller"))
        token = s.sale_token
        return f"Reclaimed {format_token_amount(amount, token.decimals, token.symbol)}."

    return run_sale_operation("Deposit reclaim", sale, action)


def main() -> None:
    logger.info("Starting Sale Escrow MCP Server...")
    try:
        mcp.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user")
    finally:
        logger.info("Sale Escrow MCP Server stopped.")


# --- Main Execution ---
if __name__ == "__main__":
    main()
