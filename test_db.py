import json
import unittest

from db import DataStore, KV_CAPACITY, MAX_ROWS, SCHEMA
from template_core import StoreError


def add_command(store: DataStore, **kw) -> int:
    row = {
        'guild_id': '-100',
        'command_name': 'hi',
        'command_code': 'hello',
        'trigger_type': 'command',
        **kw,
    }
    for k in ('require_roles', 'ignore_roles', 'require_channels', 'ignore_channels'):
        if k in row:
            row[k] = json.dumps(row[k])
    cols = ', '.join(row)
    marks = ', '.join('?' * len(row))
    with store.conn:
        cursor = store.conn.execute(
            f'INSERT INTO custom_commands ({cols}) VALUES ({marks});',
            tuple(row.values()),
        )
    return cursor.lastrowid


class TestDataStore(unittest.TestCase):
    def setUp(self):
        self.store = DataStore()
        self.store.connect(':memory:')

    def tearDown(self):
        self.store.close()

    def test_kv(self):
        s = self.store
        self.assertIsNone(s.kv_get('a'))
        self.assertEqual(s.kv_get('a', 'x'), 'x')
        s.kv_set('a', '1')
        s.kv_set('a', '2')
        self.assertEqual(s.kv_get('a'), '2')
        s.kv_delete('a')
        self.assertIsNone(s.kv_get('a'))

    def test_kv_capacity(self):
        s = self.store
        # Fill up without the trigger, then let it evict on the next inserts.
        with s.conn:
            s.conn.execute('DROP TRIGGER KV_fifo;')
            s.conn.executemany(
                'INSERT INTO KV (key, value) VALUES (?, ?);',
                [(f'k{i}', 'v') for i in range(KV_CAPACITY)],
            )
        with s.conn:
            s.conn.executescript(SCHEMA)
        for i in range(KV_CAPACITY, KV_CAPACITY + 5):
            s.kv_set(f'k{i}', 'v')
        n = s.conn.execute('SELECT COUNT(*) FROM KV').fetchone()[0]
        self.assertEqual(n, KV_CAPACITY)
        self.assertIsNone(s.kv_get('k0'))
        self.assertEqual(s.kv_get(f'k{KV_CAPACITY + 4}'), 'v')

    def test_registry(self):
        s = self.store
        r1 = s.set('color', 'theme', 'blue', 'Accent')
        r2 = s.set('color', 'theme', 'red')
        self.assertEqual(r1['id'], r2['id'])
        self.assertEqual(s.get('color', 'theme')['value'], 'red')
        self.assertEqual(s.get('color')['description'], '')
        self.assertIsNone(s.get('color', 'other'))

        s.set('a', 'theme', '1')
        self.assertEqual([r['key'] for r in s.get_all('theme')], ['a', 'color'])
        self.assertTrue(s.delete('a', 'theme'))
        self.assertFalse(s.delete('a', 'theme'))

    def test_query_whitelist(self):
        s = self.store
        add_command(s)
        rows = s.query('custom_commands')
        self.assertEqual(len(rows), 1)
        self.assertNotIn('command_code', rows[0])
        self.assertEqual(rows[0]['command_name'], 'hi')

        with self.assertRaises(StoreError):
            s.query('KV')
        with self.assertRaises(StoreError):
            s.query('custom_commands', {'command_code': 'hello'})
        with self.assertRaises(StoreError):
            s.count('users', {'user_id': {'nested': 1}})

    def test_query_limit(self):
        s = self.store
        with s.conn:
            s.conn.executemany(
                'INSERT INTO users (user_id) VALUES (?);',
                [(str(i),) for i in range(MAX_ROWS + 50)],
            )
        self.assertEqual(len(s.query('users', limit=1000)), MAX_ROWS)
        self.assertEqual(len(s.query('users', limit=0)), MAX_ROWS)
        self.assertEqual(len(s.query('users', limit=3)), 3)
        self.assertEqual(s.count('users'), MAX_ROWS + 50)
        self.assertEqual(s.count('users', {'user_id': '7'}), 1)

    def test_deadline(self):
        s = self.store
        sql = '''WITH RECURSIVE c(x) AS (
                     SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < 10000000
                 ) SELECT COUNT(*) FROM c;'''
        with self.assertRaisesRegex(StoreError, 'timed out'):
            with s._deadline(-1):
                s.conn.execute(sql).fetchall()
        # The handler is cleared afterwards.
        self.assertEqual(s.count('users'), 0)

    def test_roles(self):
        s = self.store
        with s.conn:
            s.conn.executescript(
                '''
                INSERT INTO roles (id, name, clearance_level) VALUES
                    (1, 'One', '1'), (2, 'Omega', 'Ω'), (3, 'Three', '3');
                INSERT INTO user_roles (user_id, role_id) VALUES
                    ('u', 1), ('u', 2), ('u', 3);
                INSERT INTO permissions (id, permission_key) VALUES (1, 'p.a'), (2, 'p.b');
                INSERT INTO role_permissions (role_id, permission_id) VALUES
                    (1, 1), (3, 2), (3, 1);
                '''
            )
        self.assertEqual([r['name'] for r in s.user_roles('u')], ['Omega', 'Three', 'One'])
        self.assertTrue(s.has_role('u', 2))
        self.assertFalse(s.has_role('v', 2))
        self.assertTrue(s.check_permission('u', 'p.b'))
        self.assertFalse(s.check_permission('v', 'p.b'))
        self.assertEqual(s.user_permissions('u'), ['p.a', 'p.b'])

    def test_commands(self):
        s = self.store
        i = add_command(
            s,
            case_sensitive=1,
            require_roles=['administrator'],
            ignore_channels=[-200],
        )
        add_command(s, command_name='off', enabled=0)
        add_command(s, guild_id='-300')
        add_command(s, command_name='word', trigger_type='contains')

        (cmd,) = s.commands('-100', 'command')
        self.assertEqual(cmd['id'], i)
        self.assertIs(cmd['case_sensitive'], True)
        self.assertIs(cmd['response_in_dm'], False)
        self.assertEqual(cmd['require_roles'], ['administrator'])
        self.assertEqual(cmd['ignore_channels'], ['-200'])
        self.assertEqual(cmd['require_channels'], [])

        s.record_use(i)
        s.record_use(i)
        self.assertEqual(s.commands('-100', 'command')[0]['uses'], 2)
        self.assertEqual(len(s.commands('-100', 'contains')), 1)
        self.assertEqual(s.commands('-100', 'regex'), [])

    def test_role_lookup(self):
        s = self.store
        with s.conn:
            s.conn.execute(
                '''INSERT INTO roles (id, name, clearance_level, color) VALUES
                       (1, 'One', '1', '#111111'), (2, 'Omega', 'Ω', NULL);'''
            )
        self.assertEqual(s.role('2')['name'], 'Omega')
        self.assertEqual(s.role('One')['color'], '#111111')
        self.assertIsNone(s.role('3'))
        self.assertIsNone(s.role('one'))
        self.assertEqual([r['name'] for r in s.roles()], ['Omega', 'One'])
        self.assertEqual(s.query('roles', {'color': '#111111'})[0]['id'], 1)

    def test_command_lookup(self):
        s = self.store
        i = add_command(s, require_roles=['administrator'])
        j = add_command(s, command_name='off', enabled=0, trigger_type='regex')
        add_command(s, command_name='other', guild_id='-300')

        cmd = s.command('-100', 'hi')
        self.assertEqual(cmd['id'], i)
        self.assertEqual(cmd['require_roles'], ['administrator'])
        self.assertIs(s.command('-100', str(j))['enabled'], False)
        self.assertIsNone(s.command('-100', 'other'))
        self.assertIsNone(s.command('-300', str(i)))

    def test_registry_entries(self):
        s = self.store
        for i in range(5):
            s.set(f'k{i}', 'guild' if i % 2 else 'global', str(i))
        rows = s.registry_entries(3)
        self.assertEqual(
            rows,
            [
                {'type': 'global', 'key': 'k0', 'value': '0'},
                {'type': 'guild', 'key': 'k1', 'value': '1'},
                {'type': 'global', 'key': 'k2', 'value': '2'},
            ],
        )

    def test_summary(self):
        add_command(self.store)
        self.store.kv_set('a', '1')
        self.assertEqual(
            self.store.summary(), '1 commands, 1 keys, 0 registry entries'
        )


if __name__ == '__main__':
    unittest.main()
