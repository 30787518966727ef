import json
import time
import atexit
import sqlite3
from sqlite3 import connect, Connection
from contextlib import contextmanager
from typing import Any, Mapping

from template_core.interfaces import Row, Store, StoreError

# Tables and columns that templates may read.
ALLOWED_TABLES: dict[str, tuple[str, ...]] = {
    'users': ('user_id', 'qft_uuid', 'username', 'email', 'created_at', 'updated_at'),
    'custom_commands': (
        'id',
        'guild_id',
        'command_name',
        'description',
        'created_at',
        'enabled',
    ),
    'registry': ('id', 'type', 'key', 'value', 'description'),
    'roles': ('id', 'name', 'clearance_level', 'color', 'description'),
    'permissions': ('id', 'permission_key', 'category', 'label', 'description'),
    'tickets': ('id', 'guild_id', 'user_id', 'ticket_number', 'status', 'created_at'),
    'workers': ('id', 'name', 'description', 'enabled', 'assigned_role_id'),
}

MAX_ROWS = 100
QUERY_TIMEOUT = 5.0
KV_CAPACITY = 10000

CLEARANCE_ORDER = '''CASE r.clearance_level
    WHEN 'α' THEN 1 WHEN 'Ω' THEN 2 WHEN '3' THEN 3
    WHEN '2' THEN 4 WHEN '1' THEN 5 ELSE 6 END'''

SCHEMA = f'''
CREATE TABLE IF NOT EXISTS KV (
    id    INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
    key   TEXT    UNIQUE NOT NULL,
    value TEXT    NOT NULL
);

CREATE TRIGGER IF NOT EXISTS KV_fifo
AFTER INSERT ON KV
BEGIN
    DELETE FROM KV WHERE id IN (
        SELECT id FROM KV ORDER BY id DESC LIMIT -1 OFFSET {KV_CAPACITY}
    );
END;

CREATE TABLE IF NOT EXISTS registry (
    id          INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
    type        TEXT NOT NULL,
    key         TEXT NOT NULL,
    value       TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at  TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (type, key)
);

CREATE TABLE IF NOT EXISTS users (
    user_id    TEXT PRIMARY KEY NOT NULL,
    qft_uuid   TEXT,
    username   TEXT,
    email      TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS roles (
    id              INTEGER PRIMARY KEY NOT NULL,
    name            TEXT NOT NULL,
    clearance_level TEXT,
    color           TEXT,
    description     TEXT
);

CREATE TABLE IF NOT EXISTS user_roles (
    user_id TEXT    NOT NULL,
    role_id INTEGER NOT NULL,
    PRIMARY KEY (user_id, role_id)
);

CREATE TABLE IF NOT EXISTS permissions (
    id             INTEGER PRIMARY KEY NOT NULL,
    permission_key TEXT UNIQUE NOT NULL,
    category       TEXT,
    label          TEXT,
    description    TEXT
);

CREATE TABLE IF NOT EXISTS role_permissions (
    role_id       INTEGER NOT NULL,
    permission_id INTEGER NOT NULL,
    enabled       INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (role_id, permission_id)
);

CREATE TABLE IF NOT EXISTS custom_commands (
    id               INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
    guild_id         TEXT    NOT NULL,
    command_name     TEXT    NOT NULL,
    description      TEXT    NOT NULL DEFAULT '',
    command_code     TEXT    NOT NULL,
    trigger_type     TEXT    NOT NULL DEFAULT 'command',
    case_sensitive   INTEGER NOT NULL DEFAULT 0,
    response_type    TEXT    NOT NULL DEFAULT 'text',
    response_in_dm   INTEGER NOT NULL DEFAULT 0,
    delete_trigger   INTEGER NOT NULL DEFAULT 0,
    delete_response  INTEGER NOT NULL DEFAULT 0,
    cooldown_seconds INTEGER NOT NULL DEFAULT 0,
    require_roles    TEXT    NOT NULL DEFAULT '[]',
    ignore_roles     TEXT    NOT NULL DEFAULT '[]',
    require_channels TEXT    NOT NULL DEFAULT '[]',
    ignore_channels  TEXT    NOT NULL DEFAULT '[]',
    enabled          INTEGER NOT NULL DEFAULT 1,
    uses             INTEGER NOT NULL DEFAULT 0,
    created_at       TEXT    NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tickets (
    id            INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
    guild_id      TEXT NOT NULL,
    user_id       TEXT NOT NULL,
    ticket_number INTEGER NOT NULL,
    status        TEXT NOT NULL DEFAULT 'open',
    created_at    TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS workers (
    id               INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
    name             TEXT NOT NULL,
    description      TEXT,
    enabled          INTEGER NOT NULL DEFAULT 1,
    assigned_role_id INTEGER
);
'''

LIST_COLUMNS = ('require_roles', 'ignore_roles', 'require_channels', 'ignore_channels')
FLAG_COLUMNS = ('case_sensitive', 'response_in_dm', 'delete_trigger', 'enabled')


def _param(v: Any) -> str | int | float | None:
    if v is None or isinstance(v, (str, int, float)):
        # bool is an int.
        return v
    raise StoreError(f'bad query value: {type(v).__name__}')


def _decode(r: Row) -> Row:
    for k in LIST_COLUMNS:
        r[k] = [str(x) for x in json.loads(r[k] or '[]')]
    for k in FLAG_COLUMNS:
        r[k] = bool(r[k])
    return r


class DataStore(Store):
    def __init__(self):
        self.conn: Connection | None = None

    def connect(self, file: str):
        assert self.conn is None
        self.conn = connect(file, autocommit=False)
        self.conn.row_factory = sqlite3.Row
        atexit.register(self.conn.close)

        with self.conn:
            self.conn.executescript(SCHEMA)

    def close(self):
        c = self.conn
        self.conn = None
        (f := c.close)()
        atexit.unregister(f)

    def summary(self) -> str:
        n = self.conn.execute('SELECT COUNT(*) FROM custom_commands').fetchone()[0]
        m = self.conn.execute('SELECT COUNT(*) FROM KV').fetchone()[0]
        k = self.conn.execute('SELECT COUNT(*) FROM registry').fetchone()[0]
        return f'{n} commands, {m} keys, {k} registry entries'

    @contextmanager
    def _deadline(self, secs: float = QUERY_TIMEOUT):
        t = time.monotonic() + secs
        self.conn.set_progress_handler(lambda: int(time.monotonic() > t), 1000)
        try:
            yield
        except sqlite3.OperationalError as e:
            if 'interrupt' in str(e):
                raise StoreError('query timed out') from e
            raise StoreError(f'query failed: {e}') from e
        finally:
            self.conn.set_progress_handler(None, 0)

    def _rows(self, sql: str, params: tuple = ()) -> list[Row]:
        with self._deadline():
            return [dict(r) for r in self.conn.execute(sql, params).fetchall()]

    # ===== key/value =====

    def kv_get(self, key: str, default: str | None = None) -> str | None:
        cursor = self.conn.execute('SELECT value FROM KV WHERE key = ?;', (key,))
        if row := cursor.fetchone():
            return row[0]
        return default

    def kv_set(self, key: str, value: str):
        with self.conn:
            self.conn.execute(
                '''INSERT INTO KV (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value;''',
                (key, value),
            )

    def kv_delete(self, key: str):
        with self.conn:
            self.conn.execute('DELETE FROM KV WHERE key = ?;', (key,))

    # ===== registry =====

    def get(self, key: str, type: str | None = None) -> Row | None:
        if type:
            rows = self._rows(
                'SELECT * FROM registry WHERE key = ? AND type = ?;', (key, type)
            )
        else:
            rows = self._rows(
                'SELECT * FROM registry WHERE key = ? ORDER BY id LIMIT 1;', (key,)
            )
        return rows[0] if rows else None

    def get_all(self, type: str) -> list[Row]:
        return self._rows(
            'SELECT * FROM registry WHERE type = ? ORDER BY key ASC;', (type,)
        )

    def set(self, key: str, type: str, value: str, description: str = '') -> Row:
        with self.conn:
            row = self.conn.execute(
                '''INSERT INTO registry (type, key, value, description)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(type, key) DO UPDATE SET
                       value = excluded.value,
                       description = excluded.description,
                       updated_at = CURRENT_TIMESTAMP
                   RETURNING *;''',
                (type, key, value, description),
            ).fetchone()
        return dict(row)

    def delete(self, key: str, type: str) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                'DELETE FROM registry WHERE key = ? AND type = ?;', (key, type)
            )
        return cursor.rowcount > 0

    def registry_entries(self, limit: int = 500) -> list[Row]:
        return self._rows(
            'SELECT type, key, value FROM registry ORDER BY id LIMIT ?;', (limit,)
        )

    # ===== whitelisted queries =====

    def _where(
        self, table: str, where: Mapping[str, Any] | None
    ) -> tuple[str, tuple]:
        if (cols := ALLOWED_TABLES.get(table)) is None:
            raise StoreError(
                f'table "{table}" not allowed, allowed: {", ".join(ALLOWED_TABLES)}'
            )
        if not where:
            return '', ()
        conds = []
        params = []
        for col, val in where.items():
            if col not in cols:
                raise StoreError(f'column "{col}" not allowed in table "{table}"')
            conds.append(f'"{col}" = ?')
            params.append(_param(val))
        return ' WHERE ' + ' AND '.join(conds), tuple(params)

    def query(
        self, table: str, where: Mapping[str, Any] | None = None, limit: int = MAX_ROWS
    ) -> list[Row]:
        clause, params = self._where(table, where)
        limit = min(int(limit), MAX_ROWS) if limit and limit > 0 else MAX_ROWS
        cols = ', '.join(f'"{c}"' for c in ALLOWED_TABLES[table])
        return self._rows(
            f'SELECT {cols} FROM "{table}"{clause} LIMIT ?;', (*params, limit)
        )

    def count(self, table: str, where: Mapping[str, Any] | None = None) -> int:
        clause, params = self._where(table, where)
        with self._deadline():
            row = self.conn.execute(
                f'SELECT COUNT(*) FROM "{table}"{clause};', params
            ).fetchone()
        return row[0]

    # ===== users, roles and permissions =====

    def user(self, user_id: str) -> Row | None:
        rows = self._rows('SELECT * FROM users WHERE user_id = ?;', (user_id,))
        return rows[0] if rows else None

    def user_roles(self, user_id: str) -> list[Row]:
        return self._rows(
            f'''SELECT r.* FROM roles r
                JOIN user_roles ur ON r.id = ur.role_id
                WHERE ur.user_id = ?
                ORDER BY {CLEARANCE_ORDER}, r.id;''',
            (user_id,),
        )

    def has_role(self, user_id: str, role_id: int) -> bool:
        return bool(
            self._rows(
                'SELECT 1 FROM user_roles WHERE user_id = ? AND role_id = ?;',
                (user_id, role_id),
            )
        )

    def check_permission(self, user_id: str, permission_key: str) -> bool:
        return bool(
            self._rows(
                '''SELECT 1 FROM role_permissions rp
                   JOIN user_roles ur ON rp.role_id = ur.role_id
                   JOIN permissions p ON rp.permission_id = p.id
                   WHERE ur.user_id = ? AND p.permission_key = ? AND rp.enabled = 1
                   LIMIT 1;''',
                (user_id, permission_key),
            )
        )

    def user_permissions(self, user_id: str) -> list[str]:
        rows = self._rows(
            '''SELECT DISTINCT p.permission_key FROM permissions p
               JOIN role_permissions rp ON p.id = rp.permission_id
               JOIN user_roles ur ON rp.role_id = ur.role_id
               WHERE ur.user_id = ? AND rp.enabled = 1
               ORDER BY p.permission_key;''',
            (user_id,),
        )
        return [r['permission_key'] for r in rows]

    def roles(self) -> list[Row]:
        return self._rows(
            f'SELECT r.* FROM roles r ORDER BY {CLEARANCE_ORDER}, r.id;'
        )

    def role(self, ref: str) -> Row | None:
        if ref.isdigit():
            rows = self._rows('SELECT * FROM roles WHERE id = ?;', (int(ref),))
        else:
            rows = self._rows(
                'SELECT * FROM roles WHERE name = ? ORDER BY id LIMIT 1;', (ref,)
            )
        return rows[0] if rows else None

    # ===== custom commands (read side) =====

    def commands(self, guild_id: str, trigger_type: str) -> list[Row]:
        rows = self._rows(
            '''SELECT * FROM custom_commands
               WHERE guild_id = ? AND trigger_type = ? AND enabled = 1
               ORDER BY id;''',
            (guild_id, trigger_type),
        )
        return [_decode(r) for r in rows]

    def command(self, guild_id: str, ident: str) -> Row | None:
        # Disabled commands are returned too; callers check `enabled`.
        if ident.isdigit():
            rows = self._rows(
                'SELECT * FROM custom_commands WHERE guild_id = ? AND id = ?;',
                (guild_id, int(ident)),
            )
        else:
            rows = self._rows(
                '''SELECT * FROM custom_commands
                   WHERE guild_id = ? AND command_name = ?
                   ORDER BY id LIMIT 1;''',
                (guild_id, ident),
            )
        return _decode(rows[0]) if rows else None

    def record_use(self, command_id: int):
        with self.conn:
            self.conn.execute(
                'UPDATE custom_commands SET uses = uses + 1 WHERE id = ?;',
                (command_id,),
            )


db = DataStore()
