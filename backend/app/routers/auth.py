from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from ..config import settings
from ..db import get_conn
from ..deps import get_session, user_permissions, SESSION_COOKIE_NAME
from ..logs import json_log
from ..security import hash_password, verify_password, needs_rehash, hash_session_token, new_session_token, session_expiry

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: str
    password: str


@router.post("/login")
def login(data: LoginIn):
    email = data.email.strip().lower()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, email, full_name, hashed_password, is_active
                    FROM users
                    WHERE lower(email) = %s
                    """,
                    (email,),
                )
                user = cur.fetchone()
                # Same answer for unknown, disabled and wrong-password accounts.
                if not user or not user["is_active"] or not verify_password(data.password, user["hashed_password"]):
                    json_log("warning", "auth.login_failed", email=email)
                    raise HTTPException(status_code=401, detail="invalid credentials")

                if needs_rehash(user["hashed_password"]):
                    cur.execute(
                        "UPDATE users SET hashed_password = %s WHERE id = %s",
                        (hash_password(data.password), user["id"]),
                    )

                token, token_hash = new_session_token()
                cur.execute(
                    """
                    INSERT INTO auth_sessions (id, user_id, token, expires_at)
                    VALUES (gen_random_uuid(), %s, %s, %s)
                    """,
                    (user["id"], token_hash, session_expiry(settings.session_days)),
                )
                permissions = user_permissions(cur, user["id"])

    resp = JSONResponse(
        {
            "token": token,
            "user_id": str(user["id"]),
            "full_name": user["full_name"],
            "permissions": permissions,
        }
    )
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.env not in {"local", "dev"},
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    json_log("info", "auth.login", user_id=user["id"])
    return resp


@router.get("/me")
def me(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            permissions = user_permissions(cur, session["user_id"])
    return {
        "user_id": session["user_id"],
        "email": session["email"],
        "full_name": session["full_name"],
        "permissions": permissions,
    }


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE auth_sessions SET is_active = false WHERE token = %s",
                    (hash_session_token(session["token"]),),
                )
    json_log("info", "auth.logout", user_id=session["user_id"])
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp
