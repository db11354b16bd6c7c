"""
TrustGate Employee Anomaly Detection.

Components:
- schemas: Anomaly types, severities, review state machine, action / baseline / anomaly
- baseline: 30-day rolling work-pattern baseline
- checks: Eight pure anomaly checks against the baseline
- detector: Activity trail, severity response, review workflow, risk summary
"""
