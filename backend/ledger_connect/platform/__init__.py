"""Platform primitives: errors, retry, tenant context and logging."""
