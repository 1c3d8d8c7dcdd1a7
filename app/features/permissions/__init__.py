"""
Organization-scoped role-based access control.

Each member holds one role per organization; a super-admin membership bypasses
role grants. Module-level access additionally requires the module to be
active for the organization.
"""
