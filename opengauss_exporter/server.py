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
"""Per-server scrape state and the pool that owns it."""

import logging
import math
import threading
import time

import psycopg2
from prometheus_client.core import GaugeMetricFamily

from opengauss_exporter.dsn import server_label
from opengauss_exporter.dsn import shadow_dsn
from opengauss_exporter.errors import ExporterError
from opengauss_exporter.errors import ScrapeError
from opengauss_exporter.errors import ServerConnectionError
from opengauss_exporter.errors import VersionProbeError
from opengauss_exporter.query import metric_name
from opengauss_exporter.version import parse_version
from opengauss_exporter.version import parse_version_sem

LOG = logging.getLogger(__name__)

SERVER_LABEL = 'server'

VERSION_QUERY = 'SELECT version();'
ALIVE_QUERY = 'SELECT 1'
DATABASES_QUERY = 'SELECT datname FROM pg_database WHERE datallowconn = true'
SETTINGS_QUERY = """
    SELECT name, setting, COALESCE(unit, ''), short_desc, vartype
    FROM pg_settings
    WHERE vartype IN ('bool', 'integer', 'real')
"""


def dbconnect(dsn, connect=psycopg2.connect):
    """Connect to DB.

    Returns: connection

    """
    try:
        connection = connect(dsn)
        connection.autocommit = True
    except psycopg2.Error as exc:
        raise ServerConnectionError(
            dsn, f'Error opening connection to database ({shadow_dsn(dsn)}): {exc}') from exc
    return connection


def dbquery(connection, sql, timeout=None):
    """ Execute a SQL query.

    Args:
        timeout (float) seconds the statement may run. A negative or
            infinite value removes the limit, None leaves the session setting alone.

    Returns: tuple(column names, rows)

    """
    with connection.cursor() as cursor:
        if timeout is not None:
            milliseconds = int(timeout * 1000) if 0 <= timeout < math.inf else 0
            cursor.execute('SET statement_timeout = %s', (milliseconds,))
        cursor.execute(sql)
        if cursor.description is None:
            return [], []
        columns = [desc[0] for desc in cursor.description]
        return columns, cursor.fetchall()


def setting_value(setting, vartype):
    """Convert a pg_settings value to a float."""
    if vartype == 'bool':
        return 1.0 if setting == 'on' else 0.0
    return float(setting)


# pylint: disable=too-many-instance-attributes
class Server():
    """ Server holds the connection and metric catalog of one target.

    The catalog and version are swapped together under a lock, and read
    under the same lock when scraping.

    """

    def __init__(self, dsn, **kwargs):
        """Constructor. Opens the connection."""
        self.dsn = dsn
        self.namespace = kwargs.get('namespace', 'pg')
        self.disable_cache = kwargs.get('disable_cache', False)
        self.disable_settings_metrics = kwargs.get('disable_settings_metrics', False)
        self._connect = kwargs.get('connect', psycopg2.connect)

        self.labels = dict(kwargs.get('labels') or {})
        self.labels[SERVER_LABEL] = server_label(dsn)

        self.primary = False
        self.version_string = None
        self.metric_map = None
        self.last_map_version = None

        self._mapping_lock = threading.Lock()
        self._cache = {}
        self.connection = dbconnect(dsn, self._connect)

    def __str__(self):
        return self.labels[SERVER_LABEL]

    @property
    def closed(self):
        """True if the connection is no longer usable."""
        return bool(getattr(self.connection, 'closed', False))

    def is_alive(self):
        """Run a trivial query to check the connection still works."""
        try:
            dbquery(self.connection, ALIVE_QUERY)
        except psycopg2.Error as exc:
            LOG.warning('Connection check failed on %s: %s', self, exc)
            return False
        return True

    def reconnect(self):
        """Replace a broken connection."""
        try:
            self.close()
        except psycopg2.Error as exc:
            LOG.debug('Error closing broken connection to %s: %s', self, exc)
        LOG.info('Reconnecting to %s', shadow_dsn(self.dsn))
        self.connection = dbconnect(self.dsn, self._connect)

    def close(self):
        """Close the connection."""
        if not self.closed:
            self.connection.close()

    def query_databases(self):
        """List the databases reachable from this server."""
        try:
            _, rows = dbquery(self.connection, DATABASES_QUERY)
        except psycopg2.Error as exc:
            raise ExporterError(f'Error querying databases on {self}: {exc}') from exc
        return [row[0] for row in rows]

    def refresh_version(self, metric_map):
        """Query the server version and assign `metric_map` if it changed.

        Returns: packaging.version.Version

        Raises VersionProbeError; the current catalog is kept in that case.

        """
        LOG.debug('Querying server version on %s', self)
        try:
            _, rows = dbquery(self.connection, VERSION_QUERY)
        except psycopg2.Error as exc:
            raise VersionProbeError(f'Error scanning version string on {self}: {exc}') from exc
        if not rows:
            raise VersionProbeError(f'Error scanning version string on {self}: no rows returned')
        version_string = rows[0][0]
        try:
            semantic_version = parse_version_sem(version_string)
        except VersionProbeError as exc:
            raise VersionProbeError(f'Error parsing version string on {self}: {exc}') from exc

        with self._mapping_lock:
            self.version_string = version_string
            if semantic_version != self.last_map_version or self.metric_map is None:
                LOG.info('Semantic version changed on %s: %s -> %s (%s)', self,
                         self.last_map_version, semantic_version, parse_version(version_string))
                self.metric_map = metric_map
                self.last_map_version = semantic_version
                self._cache = {}
        return semantic_version

    def _cached(self, instance):
        if self.disable_cache or instance.ttl <= 0:
            return None
        with self._mapping_lock:
            entry = self._cache.get(instance.name)
        if entry is None:
            return None
        stored, families = entry
        if time.monotonic() - stored >= instance.ttl:
            return None
        return families

    def _store(self, instance, families):
        if instance.ttl <= 0:
            return
        with self._mapping_lock:
            self._cache[instance.name] = (time.monotonic(), families)

    def scrape_settings(self):
        """Export pg_settings as gauges."""
        _, rows = dbquery(self.connection, SETTINGS_QUERY)
        families = []
        for name, setting, unit, description, vartype in rows:
            try:
                value = setting_value(setting, vartype)
            except ValueError:
                LOG.debug('%s: setting %s has non-numeric value %r', self, name, setting)
                continue
            doc = f'{description} [Unit: {unit}]' if unit else description
            family = GaugeMetricFamily(metric_name(self.namespace, 'settings', name),
                                       doc or 'Server setting',
                                       labels=list(self.labels))
            family.add_metric(list(self.labels.values()), value)
            families.append(family)
        return families

    def scrape(self, out):
        """Run every enabled query instance of the assigned catalog.

        Metric families are appended to `out`. A failing query instance does
        not stop the others.

        Returns: list of ScrapeError

        """
        with self._mapping_lock:
            metric_map = self.metric_map
            version = self.last_map_version
        if metric_map is None:
            return [ScrapeError(None, f'no query catalog assigned to {self}')]

        errors = []
        if self.primary and not self.disable_settings_metrics:
            try:
                out.extend(self.scrape_settings())
            except psycopg2.Error as exc:
                LOG.error('Error retrieving settings on %s: %s', self, exc)
                errors.append(ScrapeError('pg_settings', f'pg_settings on {self}: {exc}'))

        for instance in metric_map.instances():
            if not instance.enabled:
                continue
            families = self._cached(instance)
            if families is not None:
                LOG.debug('%s: using cached result for %s', self, instance.name)
                out.extend(families)
                continue

            query = instance.select_query(version)
            if query is None:
                LOG.debug('%s: no query of %s supports version %s', self, instance.name, version)
                continue

            timeout = query.timeout if query.timeout is not None else instance.timeout
            try:
                columns, rows = dbquery(self.connection, query.sql, timeout)
            except psycopg2.Error as exc:
                LOG.error('Error running query %s on %s: %s', instance.name, self, exc)
                errors.append(ScrapeError(instance.name,
                                          f'query {instance.name} on {self}: {exc}'))
                continue

            families = instance.map_rows(columns, rows, self.labels)
            self._store(instance, families)
            out.extend(families)
        return errors


class Servers():
    """ Servers creates and retains one Server per DSN. """

    def __init__(self, **kwargs):
        self.options = kwargs
        self.servers = {}
        self._lock = threading.Lock()

    def get_server(self, dsn):
        """Return the Server for `dsn`, connecting on first use.

        Raises ServerConnectionError.

        """
        with self._lock:
            server = self.servers.get(dsn)
            if server is None:
                LOG.debug('Opening connection to %s', shadow_dsn(dsn))
                server = Server(dsn, **self.options)
                self.servers[dsn] = server
            elif server.closed or not server.is_alive():
                server.reconnect()
        return server

    def close(self):
        """Close all connections."""
        with self._lock:
            for server in self.servers.values():
                try:
                    server.close()
                except psycopg2.Error as exc:
                    LOG.warning('Error closing connection to %s: %s', server, exc)
            self.servers = {}
