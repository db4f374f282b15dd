"""
Authentication and User Administration
- Email/password sign-up and sign-in with bearer session tokens
- Admin approval gate (the primary admin bypasses it)
- User management endpoints for approved admins
"""
import os
import hmac
import base64
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional, Dict
from fastapi import APIRouter, Depends, HTTPException, Header, Query
from sqlalchemy.orm import Session

from database import get_db, User, AuthSession
from models import SignUpRequest, LoginRequest, RoleUpdate, BulkUserAction, UserRole, UserStatus

router = APIRouter(prefix="/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])

SESSION_LIFETIME = timedelta(days=7)


def primary_admin_email() -> str:
    return os.getenv("PRIMARY_ADMIN_EMAIL", "admin@tripnezt.in").strip().lower()


def is_primary_admin(user_or_email) -> bool:
    email = user_or_email if isinstance(user_or_email, str) else user_or_email.email
    return (email or "").strip().lower() == primary_admin_email()


def is_approved_admin(user: User) -> bool:
    """Admins only act as admins once approved, except the primary admin"""
    return user.role == UserRole.ADMIN.value and (
        user.status == UserStatus.APPROVED.value or is_primary_admin(user)
    )


# ============== Passwords & Sessions ==============

def hash_password(password: str, salt: Optional[str] = None) -> Dict[str, str]:
    salt_bytes = os.urandom(16) if salt is None else base64.b64decode(salt)
    hashed = hashlib.pbkdf2_hmac("sha256", password.encode(), salt_bytes, 100_000)
    return {
        "salt": base64.b64encode(salt_bytes).decode(),
        "hash": base64.b64encode(hashed).decode(),
    }


def verify_password(password: str, salt: str, stored_hash: str) -> bool:
    calc = hash_password(password, salt)
    return hmac.compare_digest(calc["hash"], stored_hash)


def create_session(db: Session, user: User) -> str:
    token = secrets.token_urlsafe(32)
    db.add(AuthSession(
        token=token,
        user_id=user.id,
        expires_at=datetime.utcnow() + SESSION_LIFETIME
    ))
    user.last_login = datetime.utcnow()
    db.commit()
    return token


def _parse_bearer(authorization: str) -> str:
    try:
        scheme, token = authorization.split(" ", 1)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    if scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid auth scheme")
    return token.strip()


def resolve_user(db: Session, authorization: Optional[str]) -> Optional[User]:
    """Look up the user behind a bearer token; None without a header"""
    if not authorization:
        return None
    token = _parse_bearer(authorization)
    session = db.query(AuthSession).filter(AuthSession.token == token).first()
    if not session or session.expires_at < datetime.utcnow():
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user = db.query(User).filter(User.id == session.user_id).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found for token")
    if user.status == UserStatus.BLOCKED.value:
        raise HTTPException(status_code=403, detail="Account is blocked")
    return user


def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> User:
    user = resolve_user(db, authorization)
    if user is None:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    return user


def get_optional_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> Optional[User]:
    return resolve_user(db, authorization)


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not is_approved_admin(user):
        raise HTTPException(status_code=403, detail="Approved admin access required")
    return user


# ============== Auth Endpoints ==============

@router.post("/signup")
def sign_up(payload: SignUpRequest, db: Session = Depends(get_db)):
    """Create an account; admin applicants wait for approval"""
    email = payload.email.strip().lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="Email already registered")

    if payload.apply_as_admin:
        role = UserRole.ADMIN.value
        status = UserStatus.APPROVED.value if is_primary_admin(email) else UserStatus.PENDING.value
    else:
        role = UserRole.USER.value
        status = UserStatus.ACTIVE.value

    hashed = hash_password(payload.password)
    user = User(
        name=payload.name or "",
        email=email,
        password_hash=hashed["hash"],
        password_salt=hashed["salt"],
        role=role,
        status=status,
        phone_number=payload.phone_number or ""
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    print(f"[Auth] New {role} account {email} ({status})")

    token = create_session(db, user)
    return {"token": token, "user": user.to_dict()}


@router.post("/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == payload.email.strip().lower()).first()
    if not user or not verify_password(payload.password, user.password_salt, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if user.status == UserStatus.BLOCKED.value:
        raise HTTPException(status_code=403, detail="Account is blocked")
    if user.role == UserRole.ADMIN.value and not is_approved_admin(user):
        raise HTTPException(
            status_code=403,
            detail={
                "code": "admin-not-approved",
                "message": "Your admin account is pending approval. Please contact the primary admin."
            }
        )

    token = create_session(db, user)
    return {"token": token, "user": user.to_dict()}


@router.post("/logout")
def logout(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    if authorization:
        token = _parse_bearer(authorization)
        db.query(AuthSession).filter(AuthSession.token == token).delete()
        db.commit()
    return {"message": "Signed out"}


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return user.to_dict()


# ============== User Administration ==============

def _get_user_or_404(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _guard_target(admin: User, target: User):
    if target.id == admin.id:
        raise HTTPException(status_code=400, detail="You cannot change your own account here")
    if is_primary_admin(target):
        raise HTTPException(status_code=400, detail="The primary admin account cannot be changed")


@users_router.get("")
def list_users(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    role: Optional[UserRole] = None,
    status: Optional[UserStatus] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin)
):
    """List users with pagination and filtering"""
    query = db.query(User)
    if role:
        query = query.filter(User.role == role.value)
    if status:
        query = query.filter(User.status == status.value)
    if search:
        query = query.filter(
            (User.name.ilike(f"%{search}%")) |
            (User.email.ilike(f"%{search}%"))
        )

    total = query.count()
    users = query.order_by(User.created_at.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return {
        "data": [u.to_dict() for u in users],
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": (total + per_page - 1) // per_page
    }


@users_router.post("/{user_id}/approve")
def approve_admin(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    """Approve a pending admin application"""
    user = _get_user_or_404(db, user_id)
    if user.role != UserRole.ADMIN.value:
        raise HTTPException(status_code=400, detail="Only admin applicants can be approved")
    user.status = UserStatus.APPROVED.value
    db.commit()
    print(f"[Auth] {admin.email} approved admin {user.email}")
    return user.to_dict()


@users_router.post("/{user_id}/reject")
def reject_admin(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    """Reject an admin application; the account falls back to a regular user"""
    user = _get_user_or_404(db, user_id)
    _guard_target(admin, user)
    user.status = UserStatus.REJECTED.value
    user.role = UserRole.USER.value
    db.commit()
    return user.to_dict()


@users_router.post("/{user_id}/toggle-status")
def toggle_user_status(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    """Block an active user or unblock a blocked one"""
    user = _get_user_or_404(db, user_id)
    _guard_target(admin, user)
    user.status = UserStatus.ACTIVE.value if user.status == UserStatus.BLOCKED.value else UserStatus.BLOCKED.value
    db.commit()
    return {
        "user_id": user.id,
        "status": user.status,
        "message": f"User {user.name or user.email} is now {user.status}"
    }


@users_router.patch("/{user_id}/role")
def update_user_role(user_id: str, payload: RoleUpdate, db: Session = Depends(get_db),
                     admin: User = Depends(require_admin)):
    """Promote to admin (approved) or demote to user (active)"""
    user = _get_user_or_404(db, user_id)
    _guard_target(admin, user)
    user.role = payload.role.value
    user.status = UserStatus.APPROVED.value if payload.role == UserRole.ADMIN else UserStatus.ACTIVE.value
    db.commit()
    return user.to_dict()


@users_router.delete("/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    user = _get_user_or_404(db, user_id)
    _guard_target(admin, user)
    db.query(AuthSession).filter(AuthSession.user_id == user.id).delete()
    db.delete(user)
    db.commit()
    return {"message": "User deleted successfully"}


def _bulk_set_status(db: Session, admin: User, user_ids, status: str) -> int:
    users = db.query(User).filter(User.id.in_(user_ids)).all()
    changed = 0
    for user in users:
        if user.id == admin.id or is_primary_admin(user):
            continue
        user.status = status
        changed += 1
    db.commit()
    return changed


@users_router.post("/bulk-block")
def bulk_block(payload: BulkUserAction, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    changed = _bulk_set_status(db, admin, payload.user_ids, UserStatus.BLOCKED.value)
    return {"updated": changed}


@users_router.post("/bulk-unblock")
def bulk_unblock(payload: BulkUserAction, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    changed = _bulk_set_status(db, admin, payload.user_ids, UserStatus.ACTIVE.value)
    return {"updated": changed}
