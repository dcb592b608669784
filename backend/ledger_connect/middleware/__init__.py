"""
Middleware package.

Provides:
- TenantContextMiddleware: resolves and validates the tenant for each request
"""
