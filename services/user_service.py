from datetime import datetime, timezone
import logging

from config import settings
from models import Role

logger = logging.getLogger(__name__)

def _normalize_email(email) -> str:
    return (email or "").strip().lower()

def compute_role(email: str) -> Role:
    """Role granted to an account, decided by its e-mail address"""
    email = _normalize_email(email)
    if settings.SECRETARY_EMAIL and email == _normalize_email(settings.SECRETARY_EMAIL):
        return Role.SECRETARY
    if email in {_normalize_email(e) for e in settings.ADMIN_EMAILS}:
        return Role.DRIVER_ADMIN
    return Role.PASSENGER

def get_role(uid: str, store) -> Role:
    """Role stored in users/{uid}; unknown users are passengers"""
    if not uid:
        return Role.PASSENGER
    profile = store.get_user(uid) or {}
    return Role.parse(profile.get("role"))

async def ensure_user_profile(uid: str, email: str, store) -> Role:
    """Create the user's profile, or resync its role and e-mail when they changed"""
    email = _normalize_email(email)
    role = compute_role(email)
    now = datetime.now(timezone.utc)

    current = store.get_user(uid)
    if current is None:
        store.set_user(uid, {"uid": uid, "email": email, "role": role.value, "createdAt": now})
        logger.info(f"Created profile for {uid} with role {role.value}")
        return role

    if current.get("role") != role.value or current.get("email") != email:
        store.set_user(uid, {"role": role.value, "email": email, "updatedAt": now})
        logger.info(f"Updated role of {uid} to {role.value}")
    return role
