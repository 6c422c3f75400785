from fastapi import Header, HTTPException, Request

from .config import ADMIN_TOKEN


def validate_admin_token(token: str | None, admin_token: str | None) -> None:
    if not admin_token or not token or token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    validate_admin_token(x_admin_token, ADMIN_TOKEN)


def current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    # Identity is established upstream; this only reads the forwarded identifier.
    value = (x_user_id or "").strip()
    if not value:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return value


def get_matching_engine(request: Request):
    return request.app.state.matching_engine


def get_session_store(request: Request):
    return request.app.state.session_store


def get_clock(request: Request):
    return request.app.state.clock
