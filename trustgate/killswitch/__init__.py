"""
TrustGate Kill Switch.

Components:
- schemas: Scopes, axis targets, the configuration document, active switch records
- rules: Target validation, axis flips and the ordered operation check
- repository: Versioned compare-and-replace storage of the configuration document
- service: Cached checks, manual control, maintenance mode, auto-triggers and expiry
"""
