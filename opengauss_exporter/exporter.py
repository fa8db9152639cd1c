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
"""The exporter: drives scrape cycles across all configured servers."""

import logging
import threading
import time
from urllib.parse import urlsplit

import psycopg2
from prometheus_client import Counter
from prometheus_client import Gauge
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.core import Metric

from opengauss_exporter.catalog import build_catalog
from opengauss_exporter.dsn import shadow_dsn
from opengauss_exporter.dsn import with_database
from opengauss_exporter.errors import ExporterError
from opengauss_exporter.errors import ServerConnectionError
from opengauss_exporter.errors import VersionProbeError
from opengauss_exporter.query import metric_name
from opengauss_exporter.server import Servers
from opengauss_exporter.version import short_version

LOG = logging.getLogger(__name__)

NAMESPACE = 'pg'
EXPORTER = 'exporter'
STATIC_LABEL = 'static'


def copy_family(family, samples=True):
    """Return a copy of a metric family, optionally without samples."""
    clone = Metric(family.name, family.documentation, family.type, family.unit)
    if samples:
        clone.samples = list(family.samples)
    return clone


class FamilyBuffer():
    """ Collects the metric families of one scrape cycle.

    Families with the same name coming from different servers are merged,
    so every name is exposed once.

    """

    def __init__(self):
        self._families = {}

    def append(self, family):
        """Add one family."""
        existing = self._families.get(family.name)
        if existing is None:
            self._families[family.name] = copy_family(family)
        elif existing.type != family.type:
            LOG.warning('Dropping metric %s of type %s, already collected as %s',
                        family.name, family.type, existing.type)
        else:
            existing.samples.extend(family.samples)

    def extend(self, families):
        """Add several families."""
        for family in families:
            self.append(family)

    def families(self):
        """Collected families, in first-seen order."""
        return list(self._families.values())


# pylint: disable=too-many-instance-attributes
class Exporter():
    """ Exporter collects openGauss and PostgreSQL metrics.

    Exporter implements the prometheus_client collector interface. Every
    call to collect() runs one scrape cycle over all targets.

    """

    def __init__(self, dsn, **kwargs):
        """Constructor.

        Raises ValidationError or ConfigLoadError when `fail_fast` is set and
        the query configuration is invalid.
        """
        self.dsn = list(dsn)
        self.config_path = kwargs.get('config_path')
        self.disable_cache = kwargs.get('disable_cache', False)
        self.auto_discovery = kwargs.get('auto_discovery', False)
        self.fail_fast = kwargs.get('fail_fast', False)
        self.excluded_databases = set(kwargs.get('excluded_databases') or ())
        self.disable_settings_metrics = kwargs.get('disable_settings_metrics', False)
        self.constant_labels = dict(kwargs.get('constant_labels') or {})
        self.namespace = kwargs.get('namespace') or NAMESPACE

        # one scrape cycle at a time; HTTP requests arrive on several threads
        self._collect_lock = threading.Lock()

        self.metric_map, self.config_results = build_catalog(self.config_path,
                                                             defaults=kwargs.get('catalog'),
                                                             fail_fast=self.fail_fast)
        self._setup_internal_metrics()
        self.servers = Servers(labels=self.constant_labels,
                               namespace=self.namespace,
                               disable_cache=self.disable_cache,
                               disable_settings_metrics=self.disable_settings_metrics,
                               connect=kwargs.get('connect', psycopg2.connect))

    def _internal(self, metric_type, name, documentation, subsystem=EXPORTER, labelnames=()):
        return metric_type(name, documentation,
                           labelnames=tuple(self.constant_labels) + tuple(labelnames),
                           namespace=self.namespace,
                           subsystem=subsystem,
                           registry=None)

    def _child(self, metric, **labels):
        labels = {**self.constant_labels, **labels}
        return metric.labels(**labels) if labels else metric

    def _setup_internal_metrics(self):
        """Configure internal metrics."""

        self.duration = self._internal(Gauge, 'last_scrape_duration_seconds',
                                       'Duration of the last scrape of metrics from openGauss.')

        self.total_scrapes = self._internal(Counter, 'scrapes_total',
                                            'Total number of times openGauss was scraped for metrics.')

        self.error = self._internal(Gauge, 'last_scrape_error',
                                    'Whether the last scrape of metrics from openGauss resulted '
                                    'in an error (1 for error, 0 for success).')

        self.up = self._internal(Gauge, 'up',
                                 'Whether the last scrape of metrics from openGauss was able to '
                                 'connect to the server (1 for yes, 0 for no).',
                                 subsystem='')

        self.user_queries_error = self._internal(Gauge, 'user_queries_load_error',
                                                 'Whether the user queries file was loaded and parsed '
                                                 'successfully (1 for error, 0 for success).',
                                                 labelnames=('filename', 'hashsum'))
        for result in self.config_results:
            self._child(self.user_queries_error,
                        filename=result.filename,
                        hashsum=result.hashsum).set(1 if result.failed else 0)

    def internal_metrics(self):
        """The exporter's own metric objects."""
        return [self.duration, self.total_scrapes, self.error, self.up, self.user_queries_error]

    def describe(self):
        """Describe metrics by running one collection and dropping samples."""
        return [copy_family(family, samples=False) for family in self.collect()]

    def collect(self):
        """Run one scrape cycle and return all metric families."""
        with self._collect_lock:
            families = self.scrape()
            for metric in self.internal_metrics():
                families.extend(metric.collect())
        return families

    def scrape(self):
        """Scrape every target once and update the health metrics.

        Returns: list of metric families

        """
        begun = time.monotonic()
        self._child(self.total_scrapes).inc()

        dsn_list = self.discover_database_dsns() if self.auto_discovery else list(self.dsn)

        out = FamilyBuffer()
        errors_count = 0
        connection_errors_count = 0
        for dsn in dsn_list:
            try:
                errors = self.scrape_dsn(out, dsn)
            except ServerConnectionError as exc:
                LOG.error('%s', exc)
                errors_count += 1
                connection_errors_count += 1
                continue
            if errors:
                for err in errors:
                    LOG.error('%s', err)
                errors_count += 1

        # up stays 1 as long as at least one target could be reached
        self._child(self.up).set(0 if connection_errors_count >= len(dsn_list) else 1)
        self._child(self.error).set(1 if errors_count else 0)
        self._child(self.duration).set(time.monotonic() - begun)
        return out.families()

    def discover_database_dsns(self):
        """Expand the configured DSNs with every database on their servers."""
        dsn_list = {}
        for dsn in self.dsn:
            try:
                urlsplit(dsn)
            except ValueError as exc:
                LOG.error('Unable to parse DSN (%s): %s', shadow_dsn(dsn), exc)
                continue

            dsn_list[dsn] = None
            try:
                server = self.servers.get_server(dsn)
            except ServerConnectionError as exc:
                LOG.error('%s', exc)
                continue

            # the configured DSN is the primary for its discovered databases
            server.primary = True

            try:
                database_names = server.query_databases()
            except ExporterError as exc:
                LOG.error('Error querying databases (%s): %s', shadow_dsn(dsn), exc)
                continue
            for database_name in database_names:
                if database_name in self.excluded_databases:
                    continue
                dsn_list[with_database(dsn, database_name)] = None

        return list(dsn_list)

    def scrape_dsn(self, out, dsn):
        """Scrape a single target.

        Returns: list of ScrapeError

        Raises ServerConnectionError if the server can not be reached.

        """
        server = self.servers.get_server(dsn)

        if not self.auto_discovery:
            server.primary = True

        self.check_map_versions(out, server)
        return server.scrape(out)

    def check_map_versions(self, out, server):
        """Refresh the catalog of `server` and emit its version sample."""
        try:
            version = server.refresh_version(self.metric_map)
        except VersionProbeError as exc:
            LOG.warning('Proceeding with outdated query maps, as the server version '
                        'could not be determined: %s', exc)
            return

        if server.primary:
            labels = dict(server.labels)
            family = GaugeMetricFamily(metric_name(self.namespace, STATIC_LABEL),
                                       'Version string as reported by the server',
                                       labels=['version', 'short_version'] + list(labels))
            family.add_metric([server.version_string, short_version(version)] + list(labels.values()), 1)
            out.append(family)

    def close(self):
        """Close all server connections."""
        self.servers.close()
