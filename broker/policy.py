from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


def _normalize(logins: Iterable[str]) -> frozenset[str]:
    return frozenset(login.strip().lower() for login in logins if login.strip())


@dataclass(frozen=True)
class AccessPolicy:
    """Which primary-provider users may sign in, and which get privileged tools.

    ``allowed_users`` of ``None`` admits everyone. Logins compare
    case-insensitively, as GitHub treats them.
    """

    privileged_users: frozenset[str] = frozenset()
    allowed_users: frozenset[str] | None = None

    @classmethod
    def build(
        cls,
        *,
        privileged_users: Iterable[str] = (),
        allowed_users: Iterable[str] | None = None,
    ) -> "AccessPolicy":
        allowed = _normalize(allowed_users) if allowed_users else None
        return cls(privileged_users=_normalize(privileged_users), allowed_users=allowed)

    def is_allowed(self, login: str) -> bool:
        if self.allowed_users is None:
            return True
        return login.lower() in self.allowed_users

    def is_privileged(self, login: str) -> bool:
        return login.lower() in self.privileged_users
