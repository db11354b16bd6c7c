"""
TrustGate Risk-Based Authentication.

Components:
- schemas: Risk levels, auth actions, operation context, assessment, challenge
- evaluators: Pure per-signal factor functions, score clamp and action ladder
- assessor: Concurrent fact loading, persisted assessments, challenge checks
"""
