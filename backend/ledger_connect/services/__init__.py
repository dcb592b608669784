"""Provider gateway, webhook verification and tenancy services."""
