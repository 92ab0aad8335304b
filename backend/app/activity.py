import json

from .logs import json_log


# Notifications and audit rows are side channels: a failure here must never abort the
# financial transaction around them. Each write runs in its own savepoint so a failed
# statement does not leave the outer transaction in an aborted state.


def notify(cur, *, type: str, titre: str, message: str, entity_type=None, entity_id=None, user_id=None) -> bool:
    try:
        with cur.connection.transaction():
            cur.execute(
                """
                INSERT INTO notifications (id, type, titre, message, entity_type, entity_id, user_id)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                """,
                (type, titre, message, entity_type, entity_id, user_id),
            )
        return True
    except Exception as exc:
        json_log("warning", "notification.failed", type=type, entity_type=entity_type, entity_id=entity_id, error=str(exc))
        return False


def write_audit(cur, *, user_id, action: str, entity_type: str, entity_id=None, details=None) -> bool:
    try:
        with cur.connection.transaction():
            cur.execute(
                """
                INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb)
                """,
                (user_id, action, entity_type, entity_id, json.dumps(details or {}, default=str)),
            )
        return True
    except Exception as exc:
        json_log("warning", "audit.failed", action=action, entity_type=entity_type, entity_id=entity_id, error=str(exc))
        return False
