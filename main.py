import os
import logging
import functools
from typing import Callable, Coroutine

from telegram import User, Update, Bot
from telegram.ext import (
    ApplicationBuilder,
    ContextTypes,
    MessageHandler,
    CommandHandler,
    Application,
    filters,
)
from telegram.error import NetworkError

from util import (
    log,
    notify,
    shorten,
    ADMIN_ID,
    DB_FILE,
    init_util,
    use_msg,
    get_msg,
    do_notify,
)
from commands import CustomCommandHandler, Cooldowns, handle_tmpl
from db import db

handler = CustomCommandHandler(db, Cooldowns())


def auth(
    func: Callable[[Update, ContextTypes.DEFAULT_TYPE], Coroutine],
    *,
    permissive: bool = False,
) -> Callable[[Update, ContextTypes.DEFAULT_TYPE], Coroutine]:
    @functools.wraps(func)
    async def wrapper(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
        src = None
        sender_id = None
        valid = permissive

        if sender := update.effective_sender:
            sender_id = sender.id
            if isinstance(sender, User):
                src = f'{sender.full_name} ({sender.name} {sender_id})'
                valid = valid or sender_id == ADMIN_ID
            else:  # Chat
                src = f'{sender.title} [{sender.type} {sender_id}]'

        if chat := update.effective_chat:
            if chat.id != sender_id:
                src2 = f'{chat.title} {{{chat.type} {chat.id}}}'
                src = f'{src} @ {src2}' if src else src2

        log.debug('Entering %s from %s: %s', func.__name__, src, update)

        if msg := update.message or update.edited_message:
            log.debug('%s: msg %s', src, shorten(msg.text or msg.caption))

        if not valid:
            log.warning(
                '%s: Drop unauthorized update from %s: %s',
                func.__name__,
                src,
                update,
            )
            return

        with use_msg(msg):
            try:
                return await func(update, ctx)
            except Exception as e:
                log.exception('%s: %s: %s', func.__name__, type(e).__name__, e)

    return wrapper


async def handle_msg(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    if update.edited_message:
        return
    try:
        msg = get_msg(update)
    except ValueError:
        return
    if msg.from_user and msg.from_user.is_bot:
        return
    await handler.handle_message(msg)


def stats(header='qft') -> str:
    info = f'{header}: {db.summary()}'
    log.info('%s', info)
    return info


async def handle_start(update: Update, ctx: ContextTypes.DEFAULT_TYPE):
    await get_msg(update).reply_text(stats(), do_quote=True)


commands = tuple(
    (f.__name__[f.__name__.index('_') + 1 :], f)
    for f in [
        handle_start,
        handle_tmpl,
    ]
)


async def post_init(app: Application) -> None:
    bot: Bot = app.bot
    init_util(bot)
    db.connect(DB_FILE)
    await bot.set_my_commands(tuple((s, s) for s, _ in commands))
    if not log.isEnabledFor(logging.DEBUG):
        await do_notify(stats('qft initiated'))


async def post_stop(_: Application) -> None:
    db.close()
    log.info('Database closed.')


async def handle_error(update, context: ContextTypes.DEFAULT_TYPE) -> None:
    e = context.error
    if isinstance(e, NetworkError):
        with notify.suppress():
            log.error('Network error in update %s: %s: %s', update, type(e).__name__, e)
    elif isinstance(e, Exception):
        log.error(
            'Exception in update %s: %s: %s', update, type(e).__name__, e, exc_info=e
        )
    else:
        log.error('Unknown error in update %s: %s', update, e)


def main():
    app = (
        ApplicationBuilder()
        .token(os.environ['TELEGRAM_BOT_TOKEN'])
        .post_init(post_init)
        .post_stop(post_stop)
        .build()
    )
    app.add_error_handler(handle_error)

    for name, func in commands:
        app.add_handler(CommandHandler(name, auth(func)))

    app.add_handler(
        MessageHandler(
            (filters.TEXT | filters.CAPTION) & ~filters.UpdateType.EDITED,
            auth(handle_msg, permissive=True),
        )
    )

    log.info('Starting qft...')
    app.run_polling()
    log.info('qft stopped.')


if __name__ == '__main__':
    main()
