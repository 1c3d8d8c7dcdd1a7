"""
Audit and repair of organization entitlement drift.
"""
