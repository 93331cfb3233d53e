# plc_visualizer/api/routes/account.py
from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List

from fastapi import APIRouter, HTTPException, Request, Depends
from pydantic import BaseModel, Field, validator
from passlib.hash import pbkdf2_sha256

from plc_visualizer.core.config import settings
from plc_visualizer.core.types import Role, UserProfile

router = APIRouter()

DEFAULT_USER = "admin"
DEFAULT_PASSWORD = "admin"

# ─────────────────────────────────────────────────────────────────────────────
# File-based user store
#   {"updated_at": "...", "users": {"<username>": {"id", "hash", "role", "created_at"}}}
# ─────────────────────────────────────────────────────────────────────────────

_ACCOUNTS_LOCK = threading.RLock()


def _accounts_path() -> str:
    return settings.accounts_path


def _now_iso() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def _new_user(password: str, role: Role) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "hash": pbkdf2_sha256.hash(password),
        "role": role.value,
        "created_at": _now_iso(),
    }


def _load_users() -> Dict[str, Any]:
    path = _accounts_path()
    if not os.path.exists(path):
        data = {"updated_at": _now_iso(), "users": {}}
        data["users"][DEFAULT_USER] = _new_user(DEFAULT_PASSWORD, Role.ADMIN)
        _save_users(data)
        return data
    with open(path, "r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except ValueError:
            pass
    # broken file: keep a copy and start over
    backup = path + ".corrupt." + datetime.utcnow().strftime("%Y%m%d%H%M%S")
    os.replace(path, backup)
    return _load_users()


def _save_users(data: Dict[str, Any]) -> None:
    path = _accounts_path()
    tmp = path + ".tmp"
    data["updated_at"] = _now_iso()
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)


def _ensure_default_user() -> None:
    with _ACCOUNTS_LOCK:
        data = _load_users()
        if not data.get("users"):
            data["users"] = {DEFAULT_USER: _new_user(DEFAULT_PASSWORD, Role.ADMIN)}
            _save_users(data)


def _profile(username: str, user: Dict[str, Any]) -> UserProfile:
    return UserProfile(
        id=str(user.get("id") or username),
        username=username,
        role=Role(user.get("role") or Role.OPERATOR.value),
    )


def get_profile(username: str) -> Optional[UserProfile]:
    with _ACCOUNTS_LOCK:
        user = (_load_users().get("users") or {}).get(username)
    return _profile(username, user) if user else None

# ─────────────────────────────────────────────────────────────────────────────
# Request / response models
# ─────────────────────────────────────────────────────────────────────────────

class LoginDTO(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=256)


class RegisterDTO(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=6, max_length=256)


class CreateUserDTO(RegisterDTO):
    role: Role = Role.OPERATOR


class ChangePasswordDTO(BaseModel):
    old_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=6, max_length=256)
    confirm_new: str = Field(..., min_length=6, max_length=256)

    @validator("confirm_new")
    def _match(cls, v, values):
        if "new_password" in values and v != values["new_password"]:
            raise ValueError("passwords do not match")
        return v


class MeDTO(BaseModel):
    authenticated: bool
    id: Optional[str] = None
    username: Optional[str] = None
    role: Optional[Role] = None

# ─────────────────────────────────────────────────────────────────────────────
# Session helpers
# ─────────────────────────────────────────────────────────────────────────────

SESSION_KEY = "auth_user"  # kept in request.session


def require_session(request: Request) -> UserProfile:
    """Profile of the logged-in user, or 401."""
    u = request.session.get(SESSION_KEY)
    if not u:
        raise HTTPException(401, "not authenticated")
    profile = get_profile(str(u))
    if profile is None:
        # account was removed while the session lived on
        request.session.pop(SESSION_KEY, None)
        raise HTTPException(401, "not authenticated")
    return profile


def require_admin(user: UserProfile = Depends(require_session)) -> UserProfile:
    if user.role != Role.ADMIN:
        raise HTTPException(403, "admin role required")
    return user


def _clear_session(request: Request):
    request.session.pop(SESSION_KEY, None)

# ─────────────────────────────────────────────────────────────────────────────
# Auth API
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/api/auth/login")
def api_login(dto: LoginDTO, request: Request):
    """Check credentials and open a session. admin/admin exists on first run."""
    _ensure_default_user()
    uname = dto.username.strip()
    if not uname:
        raise HTTPException(400, "empty username")

    with _ACCOUNTS_LOCK:
        data = _load_users()
        user = (data.get("users") or {}).get(uname)
        if not user:
            raise HTTPException(401, "invalid credentials")
        try:
            ok = pbkdf2_sha256.verify(dto.password, user.get("hash") or "")
        except ValueError:
            ok = False
        if not ok:
            raise HTTPException(401, "invalid credentials")
        profile = _profile(uname, user)

    request.session[SESSION_KEY] = uname
    return {"ok": True, "user": profile.to_dict()}


@router.post("/api/auth/logout")
def api_logout(request: Request):
    _clear_session(request)
    return {"ok": True}


@router.post("/api/auth/register")
def api_register(dto: RegisterDTO, request: Request):
    """Self sign-up; new accounts are operators and are logged in right away."""
    uname = dto.username.strip()
    if not uname:
        raise HTTPException(400, "empty username")
    with _ACCOUNTS_LOCK:
        data = _load_users()
        users = data.setdefault("users", {})
        if uname in users:
            raise HTTPException(409, "username already exists")
        users[uname] = _new_user(dto.password, Role.OPERATOR)
        _save_users(data)
        profile = _profile(uname, users[uname])

    request.session[SESSION_KEY] = uname
    return {"ok": True, "user": profile.to_dict()}


@router.get("/api/auth/me", response_model=MeDTO)
def api_me(request: Request):
    u = request.session.get(SESSION_KEY)
    profile = get_profile(str(u)) if u else None
    if profile is None:
        return MeDTO(authenticated=False)
    return MeDTO(authenticated=True, id=profile.id, username=profile.username, role=profile.role)


@router.post("/api/auth/change_password")
def api_change_password(dto: ChangePasswordDTO, user: UserProfile = Depends(require_session)):
    with _ACCOUNTS_LOCK:
        data = _load_users()
        rec = (data.get("users") or {}).get(user.username)
        if not rec:
            raise HTTPException(404, "user not found")
        if not pbkdf2_sha256.verify(dto.old_password, rec.get("hash") or ""):
            raise HTTPException(400, "old password is wrong")
        rec["hash"] = pbkdf2_sha256.hash(dto.new_password)
        _save_users(data)
    return {"ok": True}

# ─────────────────────────────────────────────────────────────────────────────
# User management (admin)
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/api/users")
def api_users(_: UserProfile = Depends(require_admin)) -> List[Dict[str, Any]]:
    with _ACCOUNTS_LOCK:
        users = _load_users().get("users") or {}
        return [_profile(name, rec).to_dict() for name, rec in sorted(users.items())]


@router.post("/api/users")
def api_create_user(dto: CreateUserDTO, _: UserProfile = Depends(require_admin)):
    uname = dto.username.strip()
    if not uname:
        raise HTTPException(400, "empty username")
    with _ACCOUNTS_LOCK:
        data = _load_users()
        users = data.setdefault("users", {})
        if uname in users:
            raise HTTPException(409, "username already exists")
        users[uname] = _new_user(dto.password, dto.role)
        _save_users(data)
        return {"ok": True, "user": _profile(uname, users[uname]).to_dict()}


@router.delete("/api/users/{username}")
def api_delete_user(username: str, admin: UserProfile = Depends(require_admin)):
    if username == admin.username:
        raise HTTPException(400, "you cannot delete your own account")
    with _ACCOUNTS_LOCK:
        data = _load_users()
        users = data.get("users") or {}
        if username not in users:
            raise HTTPException(404, "user not found")
        users.pop(username)
        _save_users(data)
    return {"ok": True}
