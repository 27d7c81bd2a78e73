"""
Sale Escrow Package Initialization

This package provides a tiered, time-boxed token-sale escrow exposed through the Model
Context Protocol (MCP). A project deposits a fixed supply of its token into a sale, admins
schedule rounds and grant investor tiers, investors buy during the rounds they are admitted
to, and once the sale ends it settles either as successful (tokens to investors, earnings
to the owner minus a service fee) or cancelled (everyone refunded).

The package includes:
- Sale lifecycle state machine with round-gated participation and settlement
- Sale registry that deploys and catalogs sales with snapshotted fee parameters
- Admin access gate shared by the registry and its sales
- Fixed-point pricing and fee arithmetic
- In-memory fungible ledgers for the sale token and the base currency
- Custom error handling
- MCP server implementation for easy integration
"""
