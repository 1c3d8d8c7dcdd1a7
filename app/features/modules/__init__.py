"""
Functional module catalog and per-organization entitlements.

Core modules are always active; paid modules are bounded by the plan quota.
"""
