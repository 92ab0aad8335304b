#!/usr/bin/env python3
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password, password_problem


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    return secrets.token_urlsafe(16)


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0

    db_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_admin: missing DATABASE_URL", file=sys.stderr)
        return 2

    email = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@logistiga.local").strip().lower()
    if not email:
        print("bootstrap_admin: BOOTSTRAP_ADMIN_EMAIL is empty", file=sys.stderr)
        return 2

    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True
    problem = password_problem(password)
    if problem:
        print(f"bootstrap_admin: {problem}", file=sys.stderr)
        return 2

    role_name = os.getenv("BOOTSTRAP_ADMIN_ROLE_NAME", "admin").strip() or "admin"

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE lower(email) = %s", (email,))
                if cur.fetchone():
                    # Idempotent: never reset an existing admin.
                    return 0

                cur.execute(
                    """
                    INSERT INTO users (id, email, hashed_password, full_name, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, true)
                    RETURNING id
                    """,
                    (email, hash_password(password), "Administrateur"),
                )
                user_id = cur.fetchone()["id"]

                cur.execute(
                    """
                    INSERT INTO roles (id, name)
                    VALUES (gen_random_uuid(), %s)
                    ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
                    RETURNING id
                    """,
                    (role_name,),
                )
                role_id = cur.fetchone()["id"]

                # The bootstrap role holds every permission code.
                cur.execute(
                    """
                    INSERT INTO role_permissions (role_id, permission_id)
                    SELECT %s, p.id
                    FROM permissions p
                    ON CONFLICT DO NOTHING
                    """,
                    (role_id,),
                )
                cur.execute(
                    """
                    INSERT INTO user_roles (user_id, role_id)
                    VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (user_id, role_id),
                )

    print("BOOTSTRAP_ADMIN_CREATED")
    print(f"email: {email}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_ADMIN_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
