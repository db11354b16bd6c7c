"""
TrustGate shared services.

Components:
- resilience: Bounded dependency reads, delivery circuit breaker
- cache: Redis connection and the in-process TTL cache
- audit: Append-only audit log writer
- network: IP and geolocation helpers
- scheduler: Periodic security sweeps (APScheduler)
"""
