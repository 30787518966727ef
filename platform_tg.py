import functools
from typing import Awaitable, Callable, ParamSpec, TypeVar

from telegram import Bot
from telegram.error import BadRequest, TelegramError

from template_core import Member, Platform, PlatformError
from util import log

# Telegram has no free-form roles; the only one templates can grant is the
# administrator status with these rights.
ADMIN_ROLE = 'admin'
ADMIN_RIGHTS = (
    'can_manage_chat',
    'can_delete_messages',
    'can_restrict_members',
    'can_invite_users',
    'can_pin_messages',
)

P = ParamSpec('P')
T = TypeVar('T')


def _wrap(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await func(*args, **kwargs)
        except TelegramError as e:
            log.debug('%s: %s: %s', func.__name__, type(e).__name__, e)
            raise PlatformError(e.message) from e

    return wrapper


def _user_id(s: str) -> int:
    try:
        return int(s)
    except ValueError:
        raise PlatformError(f'bad user id: {s}') from None


class TelegramPlatform(Platform):
    def __init__(self, bot: Bot, chat_id: int):
        self._bot = bot
        self._chat_id = chat_id

    @_wrap
    async def resolve_member(self, user_id: str) -> Member | None:
        try:
            cm = await self._bot.get_chat_member(self._chat_id, _user_id(user_id))
        except BadRequest as e:
            if 'not found' in e.message.lower():
                return None
            raise
        u = cm.user
        return Member(
            id=str(u.id),
            name=u.username or u.full_name,
            display_name=getattr(cm, 'custom_title', None) or u.full_name,
            roles=(cm.status,),
            bot=u.is_bot,
        )

    @_wrap
    async def set_nickname(self, member: Member, text: str) -> None:
        await self._bot.set_chat_administrator_custom_title(
            self._chat_id, _user_id(member.id), text
        )

    async def _promote(self, member: Member, role: str, on: bool) -> str:
        if role != ADMIN_ROLE:
            raise PlatformError(f'unknown role: {role}')
        await self._bot.promote_chat_member(
            self._chat_id, _user_id(member.id), **{k: on for k in ADMIN_RIGHTS}
        )
        return role

    @_wrap
    async def add_role(self, member: Member, role: str) -> str:
        return await self._promote(member, role, True)

    @_wrap
    async def remove_role(self, member: Member, role: str) -> str:
        return await self._promote(member, role, False)

    @_wrap
    async def send_message(self, channel: str | None, content: str) -> None:
        target = self._chat_id if channel is None else channel
        await self._bot.send_message(target, content)

    @_wrap
    async def send_direct_message(self, user_id: str, content: str) -> None:
        await self._bot.send_message(_user_id(user_id), content)
