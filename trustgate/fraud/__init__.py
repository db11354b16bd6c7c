"""
TrustGate Fraud Evaluation.

Components:
- schemas: Risk levels, decisions, factor categories, transaction context, evaluation
- heuristics: Five deterministic sub-models and the weighted ensemble combination
- ensemble: Concurrent sub-model evaluation, persisted evaluations, fraud cases and alerts
"""
