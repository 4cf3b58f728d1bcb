from typing import Any, Callable

from badminton_signup.core.audit import log_event
from badminton_signup.core.exceptions import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from badminton_signup.core.logging import get_logger
from badminton_signup.core.security import hash_password, verify_password
from badminton_signup.models.common import to_document
from badminton_signup.models.user import Role, User
from badminton_signup.storage.base import DocumentStore

log = get_logger(__name__)


class UserDirectory:
    """Player accounts. Balances are changed only through WalletLedger."""

    def __init__(self, store: DocumentStore, *, cas_max_attempts: int = 8) -> None:
        self._store = store
        self._cas_max_attempts = cas_max_attempts

    async def find(self, user_id: str) -> User | None:
        doc = await self._store.get(User.collection, user_id)
        return User.model_validate(doc) if doc else None

    async def get(self, user_id: str) -> User:
        user = await self.find(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def get_active(self, user_id: str) -> User:
        user = await self.get(user_id)
        if not user.active:
            raise BadRequestError("User is deactivated")
        return user

    async def find_by_name(self, display_name: str) -> User | None:
        docs = await self._store.find(User.collection, display_name=display_name)
        return User.model_validate(docs[0]) if docs else None

    async def list_users(self, active_only: bool = True) -> list[User]:
        docs = await self._store.find(User.collection, active=True) if active_only else await self._store.find(User.collection)
        return sorted((User.model_validate(d) for d in docs), key=lambda u: u.display_name.lower())

    async def create(self, display_name: str, password: str | None = None, role: Role = Role.PLAYER) -> User:
        display_name = display_name.strip()
        if not display_name:
            raise BadRequestError("Display name is required")
        if "/" in display_name:
            raise BadRequestError("Display name must not contain '/'")
        if await self.find_by_name(display_name) is not None:
            raise ConflictError("Display name already taken", details={"display_name": display_name})
        user = User(
            display_name=display_name,
            role=role,
            credential_ref=hash_password(password) if password else None,
        )
        await self._store.insert(User.collection, to_document(user))
        log.info("user_created", user_id=user.id, display_name=display_name, role=role.value)
        await log_event(self._store, user.id, "user_created", "user", user.id, {"role": role.value})
        return user

    async def authenticate(self, display_name: str, password: str) -> User:
        user = await self.find_by_name(display_name)
        if user is None or not user.active or not verify_password(password, user.credential_ref):
            raise UnauthorizedError("Invalid name or password")
        log.info("user_login", user_id=user.id)
        await log_event(self._store, user.id, "user_login", "user", user.id)
        return user

    async def _update(self, user_id: str, changes: Callable[[User], dict[str, Any]]) -> User:
        for _ in range(self._cas_max_attempts):
            user = await self.get(user_id)
            updated = user.model_copy(update=changes(user))
            if await self._store.compare_and_set(User.collection, user_id, user.version, to_document(updated)):
                return updated
        raise ConflictError("User was modified concurrently, try again")

    async def set_password(self, user_id: str, password: str) -> User:
        if len(password) < 4:
            raise BadRequestError("Password too short")
        credential_ref = hash_password(password)
        # Bumping session_version signs out existing sessions.
        updated = await self._update(
            user_id, lambda u: {"credential_ref": credential_ref, "session_version": u.session_version + 1}
        )
        await log_event(self._store, user_id, "password_changed", "user", user_id)
        return updated

    async def set_role(self, user_id: str, role: Role) -> User:
        updated = await self._update(user_id, lambda u: {"role": role})
        await log_event(self._store, user_id, "role_changed", "user", user_id, {"role": role.value})
        return updated

    async def deactivate(self, user_id: str) -> User:
        updated = await self._update(user_id, lambda u: {"active": False, "session_version": u.session_version + 1})
        log.info("user_deactivated", user_id=user_id, balance=updated.balance)
        await log_event(self._store, user_id, "user_deactivated", "user", user_id, {"balance": updated.balance})
        return updated

    async def low_balance(self, threshold: int, exclude: str | None = None) -> list[User]:
        """Active users strictly below `threshold`; the gift candidates."""
        return [u for u in await self.list_users() if u.balance < threshold and u.id != exclude]


def session_payload_for_user(user: User) -> dict:
    return {"user_id": user.id, "session_version": user.session_version}
