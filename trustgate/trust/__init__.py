"""
TrustGate Trust Score Engine.

Components:
- schemas: Tiers, trend, components, benefits bundle, score result
- components: Point tables per component, weighted composite, tier / trend
- engine: Cached reads, recalculation, history, degraded lookup for other engines
"""
