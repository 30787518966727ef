import os
import asyncio
import logging
import traceback

from contextlib import contextmanager
from contextvars import ContextVar
from typing import TypeAlias

from telegram import Message, Bot, Update
from telegram.constants import MessageLimit

ADMIN_ID = int(os.environ['ADMIN_ID'])
DB_FILE = os.environ.get('DB_FILE', 'qft.db')
COMMAND_PREFIX = os.environ.get('COMMAND_PREFIX', '!')

MAX_TEXT_LENGTH = MessageLimit.MAX_TEXT_LENGTH

msg: ContextVar[Message | None] = ContextVar('msg')
bot: Bot | None = None


class NotifyHandler(logging.Handler):
    '''Forwards warnings to the admin chat.'''

    def __init__(self):
        super().__init__(logging.WARNING)
        self._suppressed = False

    def emit(self, record: logging.LogRecord) -> None:
        if self._suppressed or bot is None:
            return
        text = truncate_text(self.format(record))
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        asyncio.create_task(do_notify(text))

    @contextmanager
    def suppress(self):
        old = self._suppressed
        self._suppressed = True
        try:
            yield
        finally:
            self._suppressed = old


notify = NotifyHandler()


def _get_logger(name):
    if os.environ.get('DEBUG') == '1':
        level = logging.DEBUG
    else:
        level = logging.INFO

    if 'JOURNAL_STREAM' in os.environ:
        fmt = '[%(levelname)s] %(name)s: %(message)s'
    else:
        fmt = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    h = logging.StreamHandler()
    h.setLevel(level)
    h.setFormatter(logging.Formatter(fmt))
    logger.addHandler(h)

    logger.addHandler(notify)

    return logger


# `qft.template` (the engine) logs through this one.
log = _get_logger('qft')


def init_util(b: Bot):
    global bot
    bot = b


@contextmanager
def use_msg(m: Message | None):
    token = msg.set(m)
    try:
        yield m
    finally:
        msg.reset(token)


async def do_notify(text: str, parse_mode: str | None = None):
    if bot is None:
        return
    try:
        await bot.send_message(ADMIN_ID, text, parse_mode)
    except Exception:
        traceback.print_exc()


MessageSource: TypeAlias = Message | Update | None


def get_msg(update: MessageSource) -> Message:
    if isinstance(update, Update):
        if m := update.message or update.edited_message:
            return m
    elif update is None:
        if m := msg.get(None):
            return m
    else:
        return update

    raise ValueError('No message')


def get_msg_arg(update: MessageSource) -> tuple[Message, str]:
    m = get_msg(update)
    s = m.text or ''

    if not s.startswith('/'):
        return m, s.strip()
    try:
        return m, s[s.index(' ') + 1 :].strip()
    except ValueError:
        return m, ''


def shorten(s: str | None, limit: int = 30) -> str:
    if s is None:
        return 'None'
    s = s.strip().replace('\n', ' ').replace('\r', ' ')
    if len(s) > limit:
        return s[:limit] + '...'
    return s


def truncate_text(s: str) -> str:
    s = s.strip()
    if len(s) > MAX_TEXT_LENGTH:
        s = s[: MAX_TEXT_LENGTH - 12] + '\n[truncated]'
    return s
