"""
Persistent models for the local user store, directory group mappings and the activity log.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, UniqueConstraint
)
from sqlalchemy.orm import relationship

from directory_sync.database import Base


class Role(str, enum.Enum):
    """Application roles"""
    ADMIN = "Admin"
    SUPERVISOR = "Supervisor"
    USER = "User"


# Lower rank wins when one account belongs to groups mapped to different roles
ROLE_PRIORITY = {
    Role.ADMIN: 0,
    Role.SUPERVISOR: 1,
    Role.USER: 2,
}


def role_rank(role: Role) -> int:
    return ROLE_PRIORITY[Role(role)]


def higher_priority_role(current: Role, candidate: Role) -> Role:
    """Return whichever of the two roles outranks the other."""
    return candidate if role_rank(candidate) < role_rank(current) else current


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GroupMapping(Base):
    """Directory group whose members are synced, with the role they receive"""
    __tablename__ = "group_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_name = Column(String(256), unique=True, nullable=False)
    mapped_role = Column(SQLEnum(Role), default=Role.USER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    date_added = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<GroupMapping {self.group_name} -> {self.mapped_role.value if self.mapped_role else None}>"


class LocalUser(Base):
    """Application account, either local or sourced from the directory"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_name = Column(String(256), unique=True, index=True, nullable=False)
    identity_key = Column(String(256), unique=True, index=True, nullable=True)
    display_name = Column(String(200), nullable=True)
    email = Column(String(256), nullable=True)
    password_hash = Column(String(255), nullable=True)

    is_external = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    must_change_password = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan",
                         lazy="selectin", order_by="UserRole.id")

    @property
    def role(self):
        """The single assigned role, or None."""
        return self.roles[0].role if self.roles else None

    def __repr__(self):
        return f"<LocalUser {self.user_name}>"


class UserRole(Base):
    """Role assignment; an account holds at most one"""
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(Role), nullable=False)

    user = relationship("LocalUser", back_populates="roles")


class ActivityLog(Base):
    """Audit trail entry"""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)

    action = Column(String(100), nullable=False)  # e.g. 'AD Sync', 'AD Login Failed'
    details = Column(String(2000), nullable=False)
    performed_by = Column(String(256), nullable=False)
    category = Column(String(50), nullable=False)  # Auth, ADSync, UserManagement, System
    ip_address = Column(String(50), nullable=True)
    status = Column(String(20), default="Success", nullable=False)

    def __repr__(self):
        return f"<ActivityLog {self.action} by {self.performed_by}>"
