'''
Built-ins that reach outside the evaluation: the chat platform and the
registry/database store. Every one of them may fail; the engine turns those
failures into inline text.
'''

import json
import asyncio
from typing import Mapping

from .context import trace, Value, to_str, to_json
from .funcs import BUILTINS, Call, FuncError, num, resolved
from .interfaces import Member

effecting = BUILTINS.effecting

KV_NAMESPACE = 'custom_commands'


def _id(v: Value) -> str:
    if not (s := to_str(v).strip()):
        raise FuncError('missing id')
    return s


async def _member(call: Call, user_id: Value = None) -> Member:
    if user_id in (None, ''):
        user_id = to_str(call.context.resolve('Member.ID')) or to_str(
            call.context.resolve('User.ID')
        )
    uid = _id(user_id)
    if (m := await call.platform.resolve_member(uid)) is None:
        raise FuncError(f'member not found: {uid}')
    return m


# ===== platform =====


@effecting('getMember', bound=True)
async def get_member(call: Call, user_id: Value) -> Value:
    m = await call.platform.resolve_member(_id(user_id))
    return None if m is None else m.as_value()


@effecting('userArg', bound=True)
async def user_arg(call: Call, text: Value) -> Value:
    # Accepts mentions as well as raw ids.
    uid = to_str(text).strip().strip('<@!>')
    return await get_member(call, uid)


@effecting('editNickname', bound=True)
async def edit_nickname(call: Call, nick: Value) -> str:
    m = await _member(call)
    await call.platform.set_nickname(m, to_str(nick))
    return f'Nickname changed to {to_str(nick)}'


@effecting('addRole', bound=True)
async def add_role(call: Call, role: Value) -> str:
    name = await call.platform.add_role(await _member(call), _id(role))
    return f'Added role: {name}'


@effecting('removeRole', bound=True)
async def remove_role(call: Call, role: Value) -> str:
    name = await call.platform.remove_role(await _member(call), _id(role))
    return f'Removed role: {name}'


@effecting('giveRole', bound=True)
async def give_role(call: Call, user_id: Value, role: Value) -> str:
    m = await _member(call, _id(user_id))
    name = await call.platform.add_role(m, _id(role))
    return f'Added role: {name}'


@effecting('takeRole', bound=True)
async def take_role(call: Call, user_id: Value, role: Value) -> str:
    m = await _member(call, _id(user_id))
    name = await call.platform.remove_role(m, _id(role))
    return f'Removed role: {name}'


@effecting('sendMessage', bound=True)
async def send_message(call: Call, channel: Value, content: Value) -> str:
    target = to_str(channel).strip()
    if target in ('', 'nil'):
        target = None
    await call.platform.send_message(target, to_str(content))
    return 'Message sent'


@effecting('sendDM', bound=True)
async def send_dm(call: Call, content: Value) -> str:
    uid = _id(call.context.resolve('User.ID'))
    await call.platform.send_direct_message(uid, to_str(content))
    return 'DM sent'


# ===== per-user scratch values =====


def _kv_key(user_id: Value, key: Value) -> str:
    return f'{KV_NAMESPACE}:{_id(user_id)}:{to_str(key)}'


def _kv_decode(raw: str | None) -> Value:
    if raw is None:
        return ''
    try:
        return json.loads(raw)
    except (ValueError, RecursionError):
        return raw


@effecting('dbSet', bound=True)
async def db_set(call: Call, user_id: Value, key: Value, value: Value) -> str:
    await resolved(call.store.kv_set(_kv_key(user_id, key), to_json(value)))
    return 'Value set'


@effecting('dbGet', bound=True)
async def db_get(call: Call, user_id: Value, key: Value) -> Value:
    return _kv_decode(await resolved(call.store.kv_get(_kv_key(user_id, key))))


@effecting('dbDel', bound=True)
async def db_del(call: Call, user_id: Value, key: Value) -> str:
    await resolved(call.store.kv_delete(_kv_key(user_id, key)))
    return 'Value deleted'


@effecting('dbIncr', bound=True)
async def db_incr(call: Call, user_id: Value, key: Value, amount: Value = 1) -> Value:
    k = _kv_key(user_id, key)
    cur = _kv_decode(await resolved(call.store.kv_get(k)))
    val = num(cur) + num(amount)
    await resolved(call.store.kv_set(k, to_json(val)))
    return val


# ===== registry =====


@effecting('regGet', bound=True)
async def reg_get(call: Call, key: Value, type: Value = None) -> Value:
    t = to_str(type) or None
    return await resolved(call.store.get(to_str(key), t))


@effecting('regGetAll', bound=True)
async def reg_get_all(call: Call, type: Value) -> Value:
    return await resolved(call.store.get_all(_id(type)))


@effecting('regSet', bound=True)
async def reg_set(
    call: Call, key: Value, type: Value, value: Value, description: Value = ''
) -> Value:
    v = value if isinstance(value, str) else to_json(value)
    return await resolved(
        call.store.set(_id(key), _id(type), v, to_str(description))
    )


@effecting('regDelete', bound=True)
async def reg_delete(call: Call, key: Value, type: Value) -> Value:
    return await resolved(call.store.delete(_id(key), _id(type)))


# ===== read-only queries =====


def _where(v: Value) -> Mapping[str, Value]:
    if v in (None, ''):
        return {}
    if not isinstance(v, Mapping):
        raise FuncError('where must be a dict')
    return v


@effecting('dbQuery', bound=True)
async def db_query(call: Call, table: Value, where: Value = None, limit: Value = 100):
    return await resolved(
        call.store.query(_id(table), _where(where), int(num(limit)) or 100)
    )


@effecting('dbFetch', bound=True)
async def db_fetch(call: Call, table: Value, column: Value, value: Value) -> Value:
    rows = await resolved(call.store.query(_id(table), {_id(column): value}, 1))
    return rows[0] if rows else None


@effecting('dbCount', bound=True)
async def db_count(call: Call, table: Value, where: Value = None) -> Value:
    return await resolved(call.store.count(_id(table), _where(where)))


@effecting('dbExists', bound=True)
async def db_exists(call: Call, table: Value, column: Value, value: Value) -> bool:
    return await db_count(call, table, {_id(column): value}) > 0


# ===== users and permissions =====


@effecting('getUser', bound=True)
async def get_user(call: Call, user_id: Value) -> Value:
    return await resolved(call.store.user(_id(user_id)))


@effecting('getUserRoles', bound=True)
async def get_user_roles(call: Call, user_id: Value) -> Value:
    return await resolved(call.store.user_roles(_id(user_id)))


@effecting('getUserHighestRole', bound=True)
async def get_user_highest_role(call: Call, user_id: Value) -> Value:
    roles = await get_user_roles(call, user_id)
    return roles[0] if roles else None


@effecting('hasRole', bound=True)
async def has_role(call: Call, user_id: Value, role_id: Value) -> Value:
    return await resolved(call.store.has_role(_id(user_id), int(num(role_id))))


@effecting('checkPermission', bound=True)
async def check_permission(call: Call, user_id: Value, key: Value) -> Value:
    return await resolved(call.store.check_permission(_id(user_id), _id(key)))


@effecting('getUserPermissions', bound=True)
async def get_user_permissions(call: Call, user_id: Value) -> Value:
    return await resolved(call.store.user_permissions(_id(user_id)))


@effecting('isBotUser', bound=True)
async def is_bot_user(call: Call, user_id: Value) -> bool:
    m = await call.platform.resolve_member(_id(user_id))
    return m is not None and m.bot


@effecting('filterBots', bound=True)
async def filter_bots(call: Call, user_ids: Value = None) -> list:
    if not isinstance(user_ids, (list, tuple)):
        return []
    ids = [to_str(i) for i in user_ids]
    flags = await asyncio.gather(*(is_bot_user(call, i) for i in ids))
    trace('filterBots: %s -> %s', ids, flags)
    return [i for i, bot in zip(ids, flags) if not bot]


@effecting('validateUser', bound=True)
async def validate_user(call: Call, user_id: Value) -> bool:
    return await db_exists(call, 'users', 'user_id', user_id)


@effecting('validateRole', bound=True)
async def validate_role(call: Call, role_id: Value) -> bool:
    return await db_exists(call, 'roles', 'id', role_id)


# ===== roles =====


@effecting('getRole', bound=True)
async def get_role(call: Call, ref: Value) -> Value:
    r = await resolved(call.store.role(_id(ref)))
    if r is None:
        return None
    return {
        'id': r['id'],
        'name': r['name'],
        'color': r['color'] or '',
        'clearance_level': r['clearance_level'] or '',
        'mention': f'<@&{r["id"]}>',
    }


@effecting('getRoleID', bound=True)
async def get_role_id(call: Call, ref: Value) -> str:
    r = await resolved(call.store.role(_id(ref)))
    return '' if r is None else str(r['id'])


@effecting('listRoles', bound=True)
async def list_roles(call: Call) -> list:
    rows = await resolved(call.store.roles())
    return [
        {
            'id': r['id'],
            'name': r['name'],
            'clearance_level': r['clearance_level'] or '',
        }
        for r in rows
    ]


@effecting('roleColor', bound=True)
async def role_color(call: Call, ref: Value) -> str:
    r = await resolved(call.store.role(_id(ref)))
    return '' if r is None else r['color'] or ''


# ===== custom commands =====


@effecting('execCC', bound=True)
async def exec_cc(call: Call, ident: Value, *args: Value) -> str:
    '''Runs another custom command of this guild, by id or name, with `args`.'''
    if not (guild := to_str(call.context.resolve('Guild.ID'))):
        raise FuncError('no guild in context')
    ident = _id(ident)
    cmd = await resolved(call.store.command(guild, ident))
    if cmd is None:
        raise FuncError(f'command not found: {ident}')
    if not cmd['enabled']:
        raise FuncError(f'command disabled: {ident}')
    trace('execCC: %s -> %s', ident, cmd['id'])
    return await call.engine.execute(cmd['command_code'], [to_str(a) for a in args])
