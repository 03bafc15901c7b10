import json


def write_audit_log(cur, tenant_id, user_id, action: str, entity_type: str, entity_id, details=None) -> None:
    cur.execute(
        """
        INSERT INTO audit_logs (id, tenant_id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (tenant_id, user_id, action, entity_type, entity_id, json.dumps(details or {}, default=str)),
    )
