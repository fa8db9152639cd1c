#
# Copyright 2020 Red Hat, Inc.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as
# published by the Free Software Foundation, either version 3 of the
# License, or (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
#
"""Fake psycopg2 connections shared by the tests."""

import psycopg2
import pytest

from opengauss_exporter.server import ALIVE_QUERY
from opengauss_exporter.server import VERSION_QUERY

PG12_VERSION = ('PostgreSQL 12.4 on x86_64-pc-linux-gnu, compiled by gcc '
                '(GCC) 4.8.5 20150623 (Red Hat 4.8.5-39), 64-bit')


class FakeCursor():
    """Cursor answering from the responses of its FakeConnection."""

    def __init__(self, connection):
        self.connection = connection
        self.description = None
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.connection.executed.append((sql, params))
        if self.connection.broken is not None:
            raise self.connection.broken
        if sql.startswith('SET '):
            self.description = None
            self._rows = []
            return
        result = self.connection.respond(sql)
        if isinstance(result, Exception):
            raise result
        columns, rows = result
        self.description = [(name, None, None, None, None, None, None) for name in columns]
        self._rows = list(rows)

    def fetchall(self):
        return self._rows


class FakeConnection():
    """Stands in for a psycopg2 connection.

    `responses` maps a fragment of SQL text to a (columns, rows) tuple or an
    exception to raise. Setting `broken` makes every statement raise it, as
    a connection to a server that went away would.
    """

    def __init__(self, responses=None, version=PG12_VERSION):
        self.responses = dict(responses or {})
        self.version = version
        self.autocommit = False
        self.closed = 0
        self.broken = None
        self.executed = []

    def respond(self, sql):
        if sql == ALIVE_QUERY:
            return ['?column?'], [(1,)]
        if sql == VERSION_QUERY:
            if isinstance(self.version, Exception):
                return self.version
            return ['version'], [(self.version,)]
        for fragment, result in self.responses.items():
            if fragment in sql:
                return result
        if 'FROM pg_settings' in sql:
            return ['name', 'setting', 'unit', 'short_desc', 'vartype'], []
        return psycopg2.ProgrammingError(f'relation for "{sql.strip()}" does not exist')

    def statements(self, fragment):
        """Executed statements containing `fragment`."""
        return [sql for sql, _ in self.executed if fragment in sql]

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = 1


class FakeConnector():
    """Replacement for psycopg2.connect keyed by DSN."""

    def __init__(self):
        self.connections = {}
        self.calls = []

    def add(self, dsn, connection):
        self.connections[dsn] = connection
        return connection

    def __call__(self, dsn):
        self.calls.append(dsn)
        connection = self.connections.get(dsn)
        if connection is None:
            raise psycopg2.OperationalError('could not connect to server: Connection refused')
        return connection


@pytest.fixture
def make_connection():
    """Factory for FakeConnection objects."""
    return FakeConnection


@pytest.fixture
def connector():
    """A fake connect() function with no reachable servers."""
    return FakeConnector()
