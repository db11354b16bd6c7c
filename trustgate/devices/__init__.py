"""
TrustGate Device Trust Registry.

Components:
- schemas: Trust levels, platforms, device signals, device read model
- fingerprint: Stable signal hash, platform / OS / model extraction
- registry: Register, trust, block, remove, count operations, allow / deny
"""
