"""
Sensitive Operation Guard
=========================
The wrapper every privileged read/write of client data goes through:

1. optional inline pre-check (``RiskEngine.should_block_action``),
2. the operation itself,
3. an audit entry on success,
4. risk evaluation of the access, scheduled in the background.

Audit and risk failures never fail the wrapped operation; only a blocking
pre-check decision does.
"""

from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from casework_core.audit.exceptions import AuditError
from casework_core.audit.logger import AuditLogger
from casework_core.audit.models import AuditLogEntry, AuditLogInput
from casework_core.security.exceptions import ActionBlockedError
from casework_core.security.models import AccessEvent
from casework_core.security.risk_engine import RiskEngine

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class AccessContext:
    """Who is performing an operation, and from where."""
    org_id: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SensitiveOperationGuard:
    """
    Audits and risk-scores sensitive operations.

    Usage:
        guard = SensitiveOperationGuard(audit_logger, risk_engine)
        record = await guard.run(
            lambda: repo.load_client(client_id),
            context=ctx, action=AuditAction.VIEW, resource=AuditResource.CLIENT,
            resource_id=client_id,
        )
    """

    def __init__(self, audit_logger: AuditLogger, risk_engine: Optional[RiskEngine] = None):
        self.audit_logger = audit_logger
        self.risk_engine = risk_engine

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        context: AccessContext,
        action: str,
        resource: str,
        resource_id: Optional[str] = None,
        resource_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        precheck: bool = False,
    ) -> T:
        """
        Run ``operation`` under audit.

        Raises:
            ActionBlockedError: The pre-check blocked the operation
        """
        if precheck:
            await self._precheck(context, action, resource)

        result = await operation()

        entry = await self._record(AuditLogInput(
            org_id=context.org_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            user_id=context.user_id,
            resource_name=resource_name,
            details=details,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        ))
        self._evaluate(context, action, resource, resource_id, entry)
        return result

    async def _precheck(self, context: AccessContext, action: str, resource: str) -> None:
        if self.risk_engine is None or not context.user_id:
            return
        decision = await self.risk_engine.should_block_action(
            context.user_id,
            context.org_id,
            action,
            context.ip_address,
            resource=resource,
        )
        if not decision.blocked:
            return

        await self.audit_logger.security_event(
            context.org_id,
            "action_blocked",
            user_id=context.user_id,
            details={
                "blocked_action": getattr(action, "value", action),
                "blocked_resource": getattr(resource, "value", resource),
                "risk_score": decision.risk_score,
                "reason": decision.reason,
            },
        )
        raise ActionBlockedError(decision.reason or "Action blocked", decision.risk_score)

    async def _record(self, data: AuditLogInput) -> Optional[AuditLogEntry]:
        try:
            return await self.audit_logger.record(data)
        except AuditError as e:
            # Already escalated by the audit logger
            logger.warning("Operation completed without audit entry", org_id=data.org_id, error=str(e))
            return None

    def _evaluate(
        self,
        context: AccessContext,
        action: str,
        resource: str,
        resource_id: Optional[str],
        entry: Optional[AuditLogEntry],
    ) -> None:
        if self.risk_engine is None or not context.user_id:
            return
        if entry is not None:
            event = AccessEvent.from_audit_entry(entry)
        else:
            event = AccessEvent(
                user_id=context.user_id,
                org_id=context.org_id,
                action=action,
                resource=resource,
                resource_id=resource_id,
                ip_address=context.ip_address,
            )
        self.risk_engine.evaluate_in_background(event)

    def audited(
        self,
        *,
        action: str,
        resource: str,
        resource_id_arg: Optional[str] = None,
        precheck: bool = False,
    ):
        """
        Decorator form of ``run``.

        The decorated coroutine must take the AccessContext as its ``context``
        keyword argument. ``resource_id_arg`` names the keyword argument that
        carries the resource id.

        Example:
            @guard.audited(action=AuditAction.EXPORT, resource=AuditResource.REPORT,
                           resource_id_arg="report_id")
            async def export_report(report_id: str, *, context: AccessContext):
                ...
        """
        def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
            @wraps(func)
            async def wrapper(*args, **kwargs) -> T:
                context = kwargs.get("context")
                if not isinstance(context, AccessContext):
                    raise TypeError(f"{func.__name__} requires an AccessContext 'context' argument")
                resource_id = kwargs.get(resource_id_arg) if resource_id_arg else None
                return await self.run(
                    lambda: func(*args, **kwargs),
                    context=context,
                    action=action,
                    resource=resource,
                    resource_id=str(resource_id) if resource_id is not None else None,
                    precheck=precheck,
                )

            return wrapper

        return decorator
