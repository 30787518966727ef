import dataclasses
from abc import ABC, abstractmethod
from typing import Any, Mapping, TypeAlias


class PlatformError(Exception):
    pass


class StoreError(Exception):
    pass


@dataclasses.dataclass(slots=True)
class Member:
    id: str
    name: str
    display_name: str = ''
    roles: tuple[str, ...] = ()
    bot: bool = False

    def as_value(self) -> dict[str, Any]:
        return {
            'ID': self.id,
            'Username': self.name,
            'DisplayName': self.display_name or self.name,
            'Roles': list(self.roles),
            'Bot': self.bot,
        }


class Platform(ABC):
    '''Operations against the hosting chat platform. All of them may fail
    with `PlatformError`.'''

    @abstractmethod
    async def resolve_member(self, user_id: str) -> Member | None:
        pass

    @abstractmethod
    async def set_nickname(self, member: Member, text: str) -> None:
        pass

    @abstractmethod
    async def add_role(self, member: Member, role: str) -> str:
        '''Returns the name of the role added.'''

    @abstractmethod
    async def remove_role(self, member: Member, role: str) -> str:
        pass

    @abstractmethod
    async def send_message(self, channel: str | None, content: str) -> None:
        '''`channel=None` targets the channel of the invocation.'''

    @abstractmethod
    async def send_direct_message(self, user_id: str, content: str) -> None:
        pass


Row: TypeAlias = dict[str, Any]


class Store(ABC):
    '''Registry, key/value and whitelisted read-only queries. Implementations
    raise `StoreError` for rejected or failed operations.'''

    @abstractmethod
    def get(self, key: str, type: str | None = None) -> Row | None:
        pass

    @abstractmethod
    def get_all(self, type: str) -> list[Row]:
        pass

    @abstractmethod
    def set(self, key: str, type: str, value: str, description: str = '') -> Row:
        pass

    @abstractmethod
    def delete(self, key: str, type: str) -> bool:
        pass

    @abstractmethod
    def query(
        self, table: str, where: Mapping[str, Any] | None = None, limit: int = 100
    ) -> list[Row]:
        pass

    @abstractmethod
    def count(self, table: str, where: Mapping[str, Any] | None = None) -> int:
        pass

    @abstractmethod
    def kv_get(self, key: str) -> str | None:
        pass

    @abstractmethod
    def kv_set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def kv_delete(self, key: str) -> None:
        pass

    @abstractmethod
    def user(self, user_id: str) -> Row | None:
        pass

    @abstractmethod
    def user_roles(self, user_id: str) -> list[Row]:
        pass

    @abstractmethod
    def has_role(self, user_id: str, role_id: int) -> bool:
        pass

    @abstractmethod
    def check_permission(self, user_id: str, permission_key: str) -> bool:
        pass

    @abstractmethod
    def user_permissions(self, user_id: str) -> list[str]:
        pass

    @abstractmethod
    def roles(self) -> list[Row]:
        pass

    @abstractmethod
    def role(self, ref: str) -> Row | None:
        '''A role by id, or else by name.'''

    @abstractmethod
    def registry_entries(self, limit: int = 500) -> list[Row]:
        pass

    @abstractmethod
    def command(self, guild_id: str, ident: str) -> Row | None:
        '''A custom command of the guild by id, or else by name.'''
