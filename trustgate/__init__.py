"""
TrustGate — Security Decision Layer.

Decides, for every sensitive user or employee action, whether it is
allowed, challenged, delayed, or blocked.

Architecture:
    trustgate/
    ├── db/              # SQLAlchemy models, engine, read queries
    ├── services/        # Resilience, cache, audit sink, scheduler
    ├── devices/         # Device fingerprinting + trust registry
    ├── behavior/        # Behavioral profiles + live-event anomalies
    ├── trust/           # Composite 0-1000 trust score
    ├── riskauth/        # Risk-based authentication (adaptive friction)
    ├── fraud/           # Five-model fraud ensemble
    ├── employees/       # Insider / employee anomaly detection
    ├── killswitch/      # Global circuit breaker + auto-triggers
    └── alerting/        # Real-time alerts, dedup, escalation

Dependency order (leaves first):
    devices → behavior → trust → {riskauth, fraud}
    employees is independent; killswitch and alerting are cross-cutting.

Every decision is persisted before it is returned, and every mutation
records the acting identity in the audit log.

Version: 1.0.0
"""

__version__ = "1.0.0"
