from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn
from .security import hash_session_token
from datetime import datetime, timezone
from typing import List, Optional


SESSION_COOKIE_NAME = "logistiga_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def user_permissions(cur, user_id) -> List[str]:
    """Every permission code granted to the user through any of their roles."""
    cur.execute(
        """
        SELECT DISTINCT p.code
        FROM user_roles ur
        JOIN role_permissions rp ON rp.role_id = ur.role_id
        JOIN permissions p ON p.id = rp.permission_id
        WHERE ur.user_id = %s
        ORDER BY p.code
        """,
        (user_id,),
    )
    return [r["code"] for r in cur.fetchall()]


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, u.full_name, s.expires_at, s.is_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s AND u.is_active = true
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
    if not row or not row["is_active"] or row["expires_at"] < datetime.now(timezone.utc):
        raise HTTPException(status_code=401, detail="invalid token")
    return {
        "session_id": row["session_id"],
        "user_id": row["user_id"],
        "email": row["email"],
        "full_name": row["full_name"],
        "token": token,
    }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"], "full_name": session["full_name"]}


def require_permission(code: str):
    # Codes look like "<area>:<read|write>"; write does not imply read.
    def _dep(user=Depends(get_current_user)):
        with get_conn() as conn:
            with conn.cursor() as cur:
                granted = user_permissions(cur, user["user_id"])
        if code not in granted:
            raise HTTPException(status_code=403, detail=f"permission denied: {code}")
        return True
    return _dep
