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
"""Connection target (DSN) helpers."""

import logging
import os
from urllib.parse import quote
from urllib.parse import unquote
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

import yaml

LOG = logging.getLogger(__name__)

DEFAULT_PORT = 5432


def _netloc(host, port, user=None, password=None):
    netloc = host or ''
    if port:
        netloc = f'{netloc}:{port}'
    if user:
        auth = user if password is None else f'{user}:{password}'
        netloc = f'{auth}@{netloc}'
    return netloc


def shadow_dsn(dsn):
    """Return `dsn` with the password masked, for logging."""
    try:
        parts = urlsplit(dsn)
        if parts.password is None:
            return dsn
        netloc = _netloc(parts.hostname, parts.port, parts.username, '******')
    except ValueError:
        return '<unparsable dsn>'
    return urlunsplit(parts._replace(netloc=netloc))


def server_label(dsn):
    """Identify the target as host:port/database."""
    parts = urlsplit(dsn)
    label = f'{parts.hostname or "localhost"}:{parts.port or DEFAULT_PORT}'
    database = unquote(parts.path.lstrip('/'))
    if database:
        label = f'{label}/{database}'
    return label


def with_database(dsn, database):
    """Return `dsn` pointing at another database on the same server.

    The name is percent-encoded so that characters such as "#" or "/" stay
    part of the path.
    """
    parts = urlsplit(dsn)
    return urlunsplit(parts._replace(path=f'/{quote(database, safe="")}'))


def get_data_sources(environ=None):
    """Obtain list of data sources from the environment.

    DATA_SOURCE_NAME always wins so we do not break older versions
    reading secrets from files wins over secrets in environment variables
    DATA_SOURCE_NAME > DATA_SOURCE_FILE > env DATA_SOURCE_{USER|PASSWORD}

    """
    environ = os.environ if environ is None else environ
    dsn = environ.get('DATA_SOURCE_NAME')
    if dsn:
        return [item.strip() for item in dsn.split(',') if item.strip()]

    uri = environ.get('DATA_SOURCE_URI')
    if not uri:
        return []

    user_file = environ.get('DATA_SOURCE_FILE')
    if user_file:
        with open(user_file) as handle:
            data = yaml.safe_load(handle) or {}
        user = data.get('user')
        password = data.get('password')
    else:
        user = environ.get('DATA_SOURCE_USER')
        password = environ.get('DATA_SOURCE_PASSWORD', environ.get('DATA_SOURCE_PASS'))

    sources = []
    for item in uri.split(','):
        item = item.strip()
        if not item:
            continue
        if user and password:
            sources.append(f'postgresql://{user}:{password}@{item}')
        elif user:
            sources.append(f'postgresql://{user}@{item}')
        else:
            sources.append(f'postgresql://{item}')
    return sources


def parse_constant_labels(labels):
    """Parse comma-separated key=value pairs into a dict."""
    if not labels or labels.isspace():
        return {}

    parsed = {}
    for label in labels.strip().split(','):
        try:
            key, val = label.split('=')
        except ValueError:
            LOG.error('Wrong constant labels format %s, should be "key=value"', label)
            continue

        if not key.strip() or not val.strip():
            LOG.warning('Skipping "%s" due to empty key or value.', label)
            continue

        parsed[key.strip()] = val.strip()
    return parsed
