"""
Audit trail for invoicing actions.

Entries are append-only and carry a SHA256 integrity hash over their
canonical JSON form, so a row edited after the fact no longer verifies.
"""
import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, List

from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


ROLE_PRECEDENCE = ("admin", "director", "accountant", "manager", "worker")


def primary_role(user) -> str:
    names = {(getattr(r, "name", None) or "").lower() for r in getattr(user, "roles", []) or []}
    for role in ROLE_PRECEDENCE:
        if role in names:
            return role
    return "worker"


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def _integrity_hash(
    entity_type: str,
    entity_id,
    action: str,
    actor_id,
    actor_role: Optional[str],
    source: Optional[str],
    timestamp_utc: datetime,
    changes_json: Optional[Dict],
    context: Optional[Dict],
    secret: str,
) -> str:
    canonical = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "actor_role": actor_role,
        "source": source,
        "timestamp_utc": _naive_utc(timestamp_utc).isoformat(),
        "changes": changes_json,
        "context": context,
    }
    # None values are left out so optional fields do not change the hash shape
    canonical = {k: v for k, v in canonical.items() if v is not None}
    canonical_json = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID] = None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
    commit: bool = True,
) -> AuditLog:
    """
    Create an append-only audit log entry.

    Args:
        db: Database session
        entity_type: Type of entity (invoice|closing|advance)
        entity_id: Entity ID
        action: Action performed (CREATE|PAY|VOID|LOCK|UNLOCK|TAX_CONFIRM|TAX_VERIFY|SUBMITTED|APPROVED|RETURNED|OPEN|DELETE)
        actor_id: User ID who performed the action
        actor_role: Role of the actor (admin|director|accountant|manager|worker|system)
        source: Source of the action (api|system)
        changes_json: Before/after values of the changed fields
        context: Additional context (invoice number, billing class, amounts, ...)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)
        commit: Commit immediately; pass False to join the caller's transaction

    Returns:
        Created AuditLog object
    """
    timestamp_utc = datetime.utcnow().replace(tzinfo=None)
    source = source or "system"
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source,
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=_integrity_hash(
            entity_type, entity_id, action, actor_id, actor_role, source,
            timestamp_utc, changes_json, context, secret,
        ) if secret else None,
    )

    db.add(audit_log)
    if commit:
        db.commit()
        db.refresh(audit_log)
    else:
        db.flush()

    return audit_log


def record_action(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor,
    changes: Optional[Dict] = None,
    context: Optional[Dict] = None,
) -> AuditLog:
    """Audit an API action by *actor* inside the caller's transaction."""
    return create_audit_log(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor.id,
        actor_role=primary_role(actor),
        source="api",
        changes_json=changes,
        context=context,
        commit=False,
    )


def verify_audit_log(entry: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret
    if not entry.integrity_hash or not secret:
        return False
    expected = _integrity_hash(
        entry.entity_type, entry.entity_id, entry.action, entry.actor_id, entry.actor_role,
        entry.source, entry.timestamp_utc, entry.changes_json, entry.context, secret,
    )
    return expected == entry.integrity_hash


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    limit: int = 100,
    offset: int = 0
) -> List[AuditLog]:
    query = db.query(AuditLog)

    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)

    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)

    query = query.order_by(AuditLog.timestamp_utc.desc())
    return query.limit(limit).offset(offset).all()
