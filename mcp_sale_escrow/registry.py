import json
from pathlib import Path
from typing import Dict, List, Optional

from solders.pubkey import Pubkey
from mcp.server.fastmcp.utilities.logging import get_logger

from mcp_sale_escrow.access import AccessGate, is_null
from mcp_sale_escrow.config import BASIS_POINTS, SALE_EXPORT_DIR
from mcp_sale_escrow.errors import ValidationError
from mcp_sale_escrow.ledger import InMemoryLedger, TokenDirectory
from mcp_sale_escrow.sale import Sale
from mcp_sale_escrow.schemas import FeeSnapshot

logger = get_logger(__name__)


def _validate_fee_rate(fee_rate_bps: int) -> None:
    if fee_rate_bps < 0 or fee_rate_bps > BASIS_POINTS:
        raise ValidationError(f"Fee rate must be between 0 and {BASIS_POINTS} basis points")


class SaleRegistry:
    """
    Deploys sales and keeps the catalog of every sale deployed.

    The registry owns its sales; each sale gets the shared access gate and a copy of
    the fee parameters current at deployment time. Changing the fee rate or recipient
    afterwards only affects sales deployed later.
    """

    def __init__(
        self,
        access_gate: AccessGate,
        tokens: TokenDirectory,
        base_currency: InMemoryLedger,
        fee_rate_bps: int = 0,
        fee_recipient: Optional[Pubkey] = None,
    ):
        _validate_fee_rate(fee_rate_bps)
        self.access_gate = access_gate
        self.tokens = tokens
        self.base_currency = base_currency
        self.fee_rate_bps = fee_rate_bps
        self.fee_recipient = fee_recipient
        self._sales: Dict[Pubkey, Sale] = {}
        self._order: List[Pubkey] = []

    def set_fee_rate(self, caller: Pubkey, fee_rate_bps: int) -> None:
        self.access_gate.require_admin(caller)
        _validate_fee_rate(fee_rate_bps)
        self.fee_rate_bps = fee_rate_bps
        logger.info(f"Service fee set to {fee_rate_bps} bps by {caller}")

    def set_fee_recipient(self, caller: Pubkey, fee_recipient: Pubkey) -> None:
        self.access_gate.require_admin(caller)
        if is_null(fee_recipient):
            raise ValidationError("Fee recipient can not be the null address.")
        self.fee_recipient = fee_recipient
        logger.info(f"Fee recipient set to {fee_recipient} by {caller}")

    def deploy_sale(
        self,
        caller: Pubkey,
        fee_rate_bps: Optional[int] = None,
        fee_recipient: Optional[Pubkey] = None,
        payment_token: Optional[Pubkey] = None,
    ) -> Pubkey:
        """
        Creates a new sale and appends it to the catalog.

        Args:
            caller: Must be an admin.
            fee_rate_bps: Service fee for this sale; defaults to the registry's rate.
            fee_recipient: Fee recipient for this sale; defaults to the registry's.
            payment_token: Token ledger the sale is paid in. Defaults to the native
                base currency.

        Returns:
            The handle (address) of the new sale.
        """
        self.access_gate.require_admin(caller)
        rate = self.fee_rate_bps if fee_rate_bps is None else fee_rate_bps
        recipient = self.fee_recipient if fee_recipient is None else fee_recipient
        _validate_fee_rate(rate)
        if is_null(recipient):
            raise ValidationError("Fee recipient can not be the null address.")
        payment_ledger = self.base_currency if payment_token is None else self.tokens.get(payment_token)

        address = Pubkey.new_unique()
        sale = Sale(
            address=address,
            access_gate=self.access_gate,
            tokens=self.tokens,
            payment_ledger=payment_ledger,
            fees=FeeSnapshot(fee_rate_bps=rate, fee_recipient=recipient),
        )
        self._sales[address] = sale
        self._order.append(address)
        logger.info(
            f"Deployed sale #{len(self._order) - 1} at {address} "
            f"(paid in {payment_ledger.symbol}, fee {rate} bps to {recipient})"
        )
        return address

    def get_number_of_sales(self) -> int:
        return len(self._order)

    def get_sale_at(self, index: int) -> Pubkey:
        if index < 0 or index >= len(self._order):
            raise ValidationError(f"No sale at index {index}.")
        return self._order[index]

    def get_sale(self, handle: Pubkey) -> Sale:
        sale = self._sales.get(handle)
        if sale is None:
            raise ValidationError(f"Sale {handle} not found.")
        return sale

    @property
    def all_sales(self) -> List[Pubkey]:
        return list(self._order)

    def export_sale(self, handle: Pubkey, directory: Optional[Path] = None) -> Path:
        """Writes the sale's persisted fields to <directory>/<handle>.json."""
        sale = self.get_sale(handle)
        export_path = Path(directory or SALE_EXPORT_DIR)
        export_path.mkdir(parents=True, exist_ok=True)
        file_path = export_path / f"{handle}.json"
        with open(file_path, "w") as f:
            json.dump(sale.snapshot().model_dump(mode="json"), f, indent=4)
        logger.info(f"Exported sale {handle} to {file_path}")
        return file_path
