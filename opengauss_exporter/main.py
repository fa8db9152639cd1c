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
'''Entry point: serve the exporter over HTTP.'''

import logging
import os
import sys
import time

from prometheus_client import start_http_server
from prometheus_client.registry import CollectorRegistry

from opengauss_exporter.dsn import get_data_sources
from opengauss_exporter.dsn import parse_constant_labels
from opengauss_exporter.errors import ExporterError
from opengauss_exporter.exporter import Exporter

LOG = logging.getLogger(__name__)

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def env_flag(name, environ=None):
    """Read a boolean environment variable."""
    environ = os.environ if environ is None else environ
    return environ.get(name, '').strip().lower() in TRUE_VALUES


def parse_listen_address(address):
    """Split "host:port" into a tuple; an empty host listens everywhere."""
    host, _, port = address.rpartition(':')
    return host or '0.0.0.0', int(port)


def exporter_options(environ=None):
    """Build Exporter keyword arguments from the environment."""
    environ = os.environ if environ is None else environ
    excluded = environ.get('PG_EXPORTER_EXCLUDE_DATABASES', '')
    return {'config_path': environ.get('PG_EXPORTER_EXTEND_QUERY_PATH'),
            'disable_cache': env_flag('PG_EXPORTER_DISABLE_CACHE', environ),
            'auto_discovery': env_flag('PG_EXPORTER_AUTO_DISCOVER_DATABASES', environ),
            'fail_fast': env_flag('PG_EXPORTER_FAIL_FAST', environ),
            'excluded_databases': [name.strip() for name in excluded.split(',') if name.strip()],
            'disable_settings_metrics': env_flag('PG_EXPORTER_DISABLE_SETTINGS_METRICS', environ),
            'constant_labels': parse_constant_labels(environ.get('PG_EXPORTER_CONSTANT_LABELS', '')),
            'namespace': environ.get('PG_EXPORTER_NAMESPACE', 'pg')}


def main():
    """Run the exporter until interrupted."""
    logging.basicConfig(level=os.environ.get('PG_EXPORTER_LOG_LEVEL', 'INFO').upper(),
                        format='[%(asctime)s] %(levelname)s %(name)s: %(message)s')

    dsn = get_data_sources()
    if not dsn:
        LOG.critical('could not find datasource environment variable(s)')
        return 1

    try:
        exporter = Exporter(dsn, **exporter_options())
    except ExporterError as exc:
        LOG.critical('failed to start: %s', exc)
        return 1

    registry = CollectorRegistry(auto_describe=True)
    registry.register(exporter)

    host, port = parse_listen_address(os.environ.get('PG_EXPORTER_WEB_LISTEN_ADDRESS', ':9187'))
    LOG.info('Listening on %s:%d', host, port)
    start_http_server(port, addr=host, registry=registry)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        LOG.info('shutting down')
    finally:
        exporter.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
