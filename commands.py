import re
import math
import time
import asyncio
from typing import Any, Callable, Iterable

from telegram import Message, Update
from telegram.ext import ContextTypes

from template_core import Engine, EngineError
from template_core.context import parse_structured
from template_core.interfaces import Row
from platform_tg import TelegramPlatform
from util import COMMAND_PREFIX, log, get_msg_arg, shorten, truncate_text
from db import DataStore, db


def build_context(msg: Message) -> dict[str, Any]:
    '''Invocation data for templates, named the way command authors expect.'''
    user = msg.from_user
    chat = msg.chat
    ctx: dict[str, Any] = {
        'Channel': {
            'ID': str(chat.id),
            'Name': chat.title or chat.full_name or '',
            'Type': chat.type,
            'IsForum': bool(chat.is_forum),
        },
        'Guild': {
            'ID': str(chat.id),
            'Name': chat.title or '',
            'Description': getattr(chat, 'description', None) or '',
        },
        'Message': {
            'ID': str(msg.message_id),
            'Content': msg.text or msg.caption or '',
            'Timestamp': msg.date.isoformat() if msg.date else '',
            'ReplyToID': str(r.message_id) if (r := msg.reply_to_message) else '',
        },
        'Interaction': None,
    }
    if user:
        ctx['User'] = {
            'ID': str(user.id),
            'Username': user.username or user.full_name,
            'FirstName': user.first_name,
            'LastName': user.last_name or '',
            'FullName': user.full_name,
            'Bot': user.is_bot,
            'LanguageCode': user.language_code or '',
        }
        ctx['Member'] = {
            'ID': str(user.id),
            'DisplayName': user.full_name,
            'Nickname': user.username or '',
        }
    return ctx


class Cooldowns:
    '''Per (guild, command, user) deadlines.'''

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._until: dict[tuple[str, int, str], float] = {}
        self._clock = clock

    def remaining(self, guild_id: str, command_id: int, user_id: str) -> float:
        key = (guild_id, command_id, user_id)
        if (t := self._until.get(key)) is None:
            return 0
        left = t - self._clock()
        if left <= 0:
            del self._until[key]
            return 0
        return left

    def start(self, guild_id: str, command_id: int, user_id: str, secs: float):
        if secs <= 0:
            return
        now = self._clock()
        # Drop expired entries so the map only holds live cooldowns.
        self._until = {k: t for k, t in self._until.items() if t > now}
        self._until[(guild_id, command_id, user_id)] = now + secs


def match_command(
    commands: Iterable[Row], text: str, prefix: str
) -> tuple[Row, list[str]] | None:
    if not text.startswith(prefix):
        return None
    words = text[len(prefix) :].split()
    if not words:
        return None
    name, *args = words
    for cmd in commands:
        trigger = cmd['command_name']
        if cmd['case_sensitive']:
            hit = trigger == name
        else:
            hit = trigger.casefold() == name.casefold()
        if hit:
            return cmd, args
    return None


def match_contains(commands: Iterable[Row], text: str) -> Row | None:
    for cmd in commands:
        trigger = cmd['command_name']
        if cmd['case_sensitive']:
            hit = trigger in text
        else:
            hit = trigger.casefold() in text.casefold()
        if hit:
            return cmd
    return None


def match_regex(commands: Iterable[Row], text: str) -> tuple[Row, list[str]] | None:
    for cmd in commands:
        flags = 0 if cmd['case_sensitive'] else re.IGNORECASE
        try:
            m = re.search(cmd['command_name'], text, flags)
        except re.error as e:
            log.error('Invalid regex for command %s: %s', cmd['id'], e)
            continue
        if m:
            return cmd, [g or '' for g in m.groups()]
    return None


def render_embed(output: str) -> str:
    embed = parse_structured(output)
    if not isinstance(embed, dict):
        return output
    parts = [
        s
        for s in (str(embed.get('title') or ''), str(embed.get('description') or ''))
        if s
    ]
    for f in embed.get('fields') or ():
        if isinstance(f, dict):
            parts.append(f'{f.get("name", "")}: {f.get("value", "")}')
    return '\n\n'.join(parts) or output


class CustomCommandHandler:
    def __init__(
        self,
        store: DataStore,
        cooldowns: Cooldowns | None = None,
        prefix: str = COMMAND_PREFIX,
    ):
        self.store = store
        self.cooldowns = cooldowns or Cooldowns()
        self.prefix = prefix
        # Pending response deletions.
        self._tasks: set[asyncio.Task] = set()

    async def handle_message(self, msg: Message) -> bool:
        if not (text := msg.text or msg.caption):
            return False
        guild_id = str(msg.chat_id)

        if r := match_command(self.store.commands(guild_id, 'command'), text, self.prefix):
            await self.execute(*r, msg)
            return True

        if cmd := match_contains(self.store.commands(guild_id, 'contains'), text):
            await self.execute(cmd, [], msg)
            return True

        if r := match_regex(self.store.commands(guild_id, 'regex'), text):
            await self.execute(*r, msg)
            return True

        return False

    async def check_rules(
        self, cmd: Row, msg: Message, platform: TelegramPlatform
    ) -> tuple[bool, str]:
        guild_id = str(msg.chat_id)
        user_id = str(msg.from_user.id) if msg.from_user else ''

        if cmd['cooldown_seconds'] > 0:
            if left := self.cooldowns.remaining(guild_id, cmd['id'], user_id):
                return False, f'cooldown {math.ceil(left)}'

        if cmd['require_roles'] or cmd['ignore_roles']:
            member = await platform.resolve_member(user_id)
            roles = set(member.roles) if member else set()
            if cmd['require_roles'] and not roles & set(cmd['require_roles']):
                return False, 'role_required'
            if roles & set(cmd['ignore_roles']):
                return False, 'role_ignored'

        if cmd['require_channels'] and guild_id not in cmd['require_channels']:
            return False, 'channel_required'
        if guild_id in cmd['ignore_channels']:
            return False, 'channel_ignored'

        return True, ''

    async def execute(self, cmd: Row, args: list[str], msg: Message):
        platform = TelegramPlatform(msg.get_bot(), msg.chat_id)
        ok, reason = await self.check_rules(cmd, msg, platform)
        if not ok:
            log.debug('Command %s not allowed: %s', cmd['command_name'], reason)
            if reason.startswith('cooldown '):
                secs = reason.removeprefix('cooldown ')
                await msg.reply_text(
                    f'⏱️ Command on cooldown. Please wait {secs}s.', do_quote=True
                )
            return

        if cmd['delete_trigger']:
            try:
                await msg.delete()
            except Exception as e:
                log.info('Failed to delete trigger %s: %s', msg.message_id, e)

        engine = Engine(build_context(msg), platform=platform, store=self.store)
        try:
            output = await engine.evaluate(cmd['command_code'], args)
        except EngineError as e:
            log.error('Command %s failed: %s', cmd['command_name'], e)
            await msg.reply_text(f'❌ Command execution failed: {e}', do_quote=True)
            return

        log.info(
            'Command %s by %s: %s', cmd['command_name'], msg.from_user, shorten(output)
        )
        if output.strip():
            resp = await self.send_response(cmd, msg, output)
            if resp and cmd['delete_response'] > 0:
                task = asyncio.create_task(_delete_later(resp, cmd['delete_response']))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        self.store.record_use(cmd['id'])
        if msg.from_user:
            self.cooldowns.start(
                str(msg.chat_id),
                cmd['id'],
                str(msg.from_user.id),
                cmd['cooldown_seconds'],
            )

    async def send_response(self, cmd: Row, msg: Message, output: str) -> Message | None:
        if cmd['response_type'] == 'embed':
            output = render_embed(output)
        text = truncate_text(output)
        try:
            if cmd['response_in_dm'] and msg.from_user:
                return await msg.get_bot().send_message(msg.from_user.id, text)
            return await msg.reply_text(text, do_quote=True)
        except Exception as e:
            log.error('Send response failed: %s: %s', type(e).__name__, e)
            return None


async def _delete_later(m: Message, secs: float):
    await asyncio.sleep(secs)
    try:
        await m.delete()
    except Exception as e:
        log.info('Failed to delete response %s: %s', m.message_id, e)


async def handle_tmpl(update: Update, _ctx: ContextTypes.DEFAULT_TYPE):
    '''Renders an ad-hoc template: `/tmpl <template>`, or in reply to one.'''
    msg, arg = get_msg_arg(update)
    if target := msg.reply_to_message:
        text = (target.text or target.caption or '').strip()
    else:
        text = arg
    if not text:
        return await msg.reply_text(
            'Specify a template or reply to a message to render.', do_quote=True
        )

    engine = Engine(
        build_context(msg),
        platform=TelegramPlatform(msg.get_bot(), msg.chat_id),
        store=db,
    )
    args = arg.split() if target else []
    try:
        result = await engine.evaluate(text, args) or '[empty]'
    except EngineError as e:
        result = f'[engine fault: {e}]'
    if errors := engine.errors:
        result += '\n\n---\n\n' + '\n'.join(errors)
    await msg.reply_text(truncate_text(result), do_quote=True)
