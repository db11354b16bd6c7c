"""
TrustGate Real-Time Alerting & Escalation.

Components:
- schemas: Categories, priorities, channels, targets, alert request / record
- service: Create, deliver, escalate, read / action alerts
- channels: In-app, push, Telegram, e-mail, SMS and webhook dispatch
- dedup: One delivered alert per key inside the dedup window
- presets: Predefined security / fraud / system alerts
"""
