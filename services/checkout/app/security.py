"""
Checkout Service / 操作者とロール

認証は前段のゲートウェイが担当する。このサービスは検証済みの
操作者 ID とロールをヘッダ (X-Actor-Id / X-Actor-Role) で受け取り、
ユースケースの入口で一度だけロールを確認する。
"""

from dataclasses import dataclass
from enum import Enum

from fastapi import Header, HTTPException

from .errors import PermissionDenied


class Role(str, Enum):
    ADMIN = "Admin"
    MANAGER = "Manager"
    STAFF = "Staff"


STAFF_ROLES = frozenset({Role.STAFF, Role.MANAGER, Role.ADMIN})
MANAGEMENT_ROLES = frozenset({Role.MANAGER, Role.ADMIN})


@dataclass(frozen=True, slots=True)
class Actor:
    id: str
    role: Role

    def require(self, allowed: frozenset[Role], action: str) -> None:
        if self.role not in allowed:
            raise PermissionDenied(
                f"Role {self.role.value} may not {action}",
                actor_id=self.id,
                role=self.role.value,
            )


async def current_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """ゲートウェイが付与したヘッダから操作者を組み立てる。"""
    if not x_actor_id or not x_actor_role:
        raise HTTPException(401, "Authentication required")
    try:
        role = Role(x_actor_role)
    except ValueError:
        raise HTTPException(401, f"Unknown role: {x_actor_role}") from None
    return Actor(id=x_actor_id, role=role)
