"""
Predefined alerts raised by the security components.

Thin helpers over AlertingService.create_alert so every component phrases
the same event the same way.
"""

from typing import Any, Optional

from trustgate.alerting.schemas import (
    AlertCategory,
    AlertChannel,
    AlertPriority,
    AlertRecord,
    AlertRequest,
    TargetType,
)
from trustgate.alerting.service import AlertingService


class SecurityAlerts:
    """Phrasebook of security alerts."""

    def __init__(self, service: AlertingService):
        self.service = service

    async def suspicious_login(self, user_id, details: dict[str, Any]) -> Optional[AlertRecord]:
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.SECURITY,
            priority=AlertPriority.HIGH,
            title="Suspicious login attempt",
            message="A login attempt from an unusual location or device was detected.",
            target_type=TargetType.USER,
            target_id=str(user_id),
            source="auth_service",
            source_id=str(user_id),
            data=details,
        ))

    async def new_device(self, user_id, device_id, device_name: str, ip_address: Optional[str]) -> Optional[AlertRecord]:
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.SECURITY,
            priority=AlertPriority.MEDIUM,
            title="New device signed in",
            message=f"Your account was accessed from a new device: {device_name}.",
            target_type=TargetType.USER,
            target_id=str(user_id),
            source="device_registry",
            source_id=str(device_id),
            data={"device_name": device_name, "ip_address": ip_address},
        ))

    async def account_blocked(self, user_id, reason: str) -> Optional[AlertRecord]:
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.SECURITY,
            priority=AlertPriority.CRITICAL,
            title="Account blocked",
            message=f"Your account has been temporarily blocked: {reason}",
            target_type=TargetType.USER,
            target_id=str(user_id),
            source="security_service",
            source_id=str(user_id),
            data={"reason": reason},
        ))

    async def fraud_detected(
        self,
        user_id,
        transaction_id: Optional[str],
        fraud_score: int,
        risk_level: str,
        reason: str,
    ) -> Optional[AlertRecord]:
        """Notify the customer, then the fraud analyst team."""
        critical = risk_level == "CRITICAL"
        # Without a transaction the case is keyed by the user
        source_id = transaction_id or str(user_id)
        data = {
            "user_id": str(user_id),
            "transaction_id": transaction_id,
            "fraud_score": fraud_score,
            "risk_level": risk_level,
            "reason": reason,
        }
        await self.service.create_alert(AlertRequest(
            category=AlertCategory.FRAUD,
            priority=AlertPriority.CRITICAL if critical else AlertPriority.HIGH,
            title="Suspicious activity detected",
            message="We detected unusual activity on your account. Contact us if this was not you.",
            target_type=TargetType.USER,
            target_id=str(user_id),
            source="fraud_service",
            source_id=source_id,
            data=data,
        ))
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.FRAUD,
            priority=AlertPriority.EMERGENCY if critical else AlertPriority.HIGH,
            title=f"Fraud detected - score {fraud_score}",
            message=f"User {user_id}: {reason}",
            target_type=TargetType.ROLE,
            target_role="FRAUD_ANALYST",
            source="fraud_service",
            source_id=source_id,
            data=data,
        ))

    async def compliance_issue(
        self, user_id, issue_type: str, description: str, severity: AlertPriority,
    ) -> Optional[AlertRecord]:
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.COMPLIANCE,
            priority=severity,
            title=f"Compliance alert: {issue_type}",
            message=description,
            target_type=TargetType.ROLE,
            target_role="COMPLIANCE",
            source="compliance_service",
            source_id=str(user_id),
            data={"user_id": str(user_id), "issue_type": issue_type},
        ))

    async def system_issue(
        self, component: str, issue: str, severity: AlertPriority, details: Optional[dict] = None,
    ) -> Optional[AlertRecord]:
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.SYSTEM,
            priority=severity,
            title=f"System issue: {component}",
            message=issue,
            target_type=TargetType.ALL_ADMINS,
            source=component,
            data=details or {},
            channels=[AlertChannel.TELEGRAM, AlertChannel.EMAIL, AlertChannel.IN_APP],
        ))

    async def kill_switch_activated(
        self, switch_id: str, scope: str, target: str, reason: str, activated_by: str,
    ) -> Optional[AlertRecord]:
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.SYSTEM,
            priority=AlertPriority.EMERGENCY,
            title="KILL SWITCH ACTIVATED",
            message=f"{scope} - {target}: {reason}",
            target_type=TargetType.ALL_ADMINS,
            source="kill_switch",
            source_id=switch_id,
            data={"scope": scope, "target": target, "reason": reason, "activated_by": activated_by},
            channels=[
                AlertChannel.TELEGRAM, AlertChannel.SMS, AlertChannel.EMAIL,
                AlertChannel.PUSH, AlertChannel.IN_APP,
            ],
        ))

    async def kill_switch_trigger_fired(
        self, reason_code: str, details: str, switch_id: str, switch_owner: str,
    ) -> Optional[AlertRecord]:
        """An auto-trigger fired while outgoing transfers were already stopped."""
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.SYSTEM,
            priority=AlertPriority.EMERGENCY,
            title=f"Kill switch trigger: {reason_code}",
            message=f"{details}. Outgoing transfers already stopped by {switch_owner}.",
            target_type=TargetType.ALL_ADMINS,
            source="kill_switch_auto_trigger",
            source_id=reason_code,
            data={"reason": reason_code, "details": details, "switch_id": switch_id},
            channels=[AlertChannel.TELEGRAM, AlertChannel.EMAIL, AlertChannel.IN_APP],
        ))

    async def employee_anomaly(
        self,
        employee_id,
        anomaly_id,
        anomaly_type: str,
        severity: str,
        description: str,
        target_type: TargetType = TargetType.ROLE,
        target_id: Optional[str] = None,
        target_role: Optional[str] = "SECURITY",
    ) -> Optional[AlertRecord]:
        priority = {
            "CRITICAL": AlertPriority.CRITICAL,
            "HIGH": AlertPriority.HIGH,
            "MEDIUM": AlertPriority.MEDIUM,
        }.get(severity, AlertPriority.LOW)
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.SECURITY,
            priority=priority,
            title=f"Employee anomaly: {anomaly_type}",
            message=description,
            target_type=target_type,
            target_id=target_id,
            target_role=target_role if target_type in (TargetType.ROLE, TargetType.TEAM) else None,
            source="employee_anomaly",
            source_id=str(anomaly_id),
            data={"employee_id": str(employee_id), "anomaly_type": anomaly_type, "severity": severity},
        ))

    async def high_value_transaction(
        self, user_id, transaction_id: str, amount: float, tx_type: str,
    ) -> Optional[AlertRecord]:
        return await self.service.create_alert(AlertRequest(
            category=AlertCategory.BUSINESS,
            priority=AlertPriority.MEDIUM,
            title="High-value transaction",
            message=f"{tx_type}: ${amount:,.0f}",
            target_type=TargetType.ROLE,
            target_role="FINANCE",
            source="transaction_service",
            source_id=transaction_id,
            data={"user_id": str(user_id), "amount": amount, "type": tx_type},
        ))
