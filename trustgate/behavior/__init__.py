"""
TrustGate Behavioral Analytics.

Components:
- schemas: Segments, input points, profile sub-structures, live events, anomalies
- aggregation: Typed reductions over session / transaction / device history
- profiler: Build, version and query profiles; compare live events to them
"""
