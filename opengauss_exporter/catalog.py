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
"""The metric catalog: built-in query instances merged with user overrides."""

import hashlib
import logging
import os
from collections.abc import Mapping

import yaml

from opengauss_exporter.errors import ConfigLoadError
from opengauss_exporter.errors import ValidationError
from opengauss_exporter.query import Column
from opengauss_exporter.query import ColumnUsage
from opengauss_exporter.query import Query
from opengauss_exporter.query import QueryInstance

LOG = logging.getLogger(__name__)

CONFIG_SUFFIXES = ('.yml', '.yaml')

DISCARD = ColumnUsage.DISCARD
LABEL = ColumnUsage.LABEL
GAUGE = ColumnUsage.GAUGE
COUNTER = ColumnUsage.COUNTER


class MetricCatalog(Mapping):
    """ Read-only mapping of query instance name to QueryInstance.

    Lookups ignore case. Iteration follows declaration order. A catalog is
    never modified after construction; merge() builds a new one.

    """

    def __init__(self, instances=()):
        self._instances = {}
        for instance in instances:
            key = instance.name.lower()
            if key in self._instances:
                raise ValidationError(f'duplicate query instance "{instance.name}"')
            instance.check()
            self._instances[key] = instance

    def __getitem__(self, name):
        return self._instances[name.lower()]

    def __contains__(self, name):
        return isinstance(name, str) and name.lower() in self._instances

    def __iter__(self):
        return (instance.name for instance in self._instances.values())

    def __len__(self):
        return len(self._instances)

    def instances(self):
        """Query instances in declaration order."""
        return list(self._instances.values())

    def merge(self, overrides):
        """Return a new catalog with `overrides` applied.

        An override replaces the instance of the same name (ignoring case)
        in place; any other override is appended.
        """
        merged = dict(self._instances)
        for instance in overrides:
            key = instance.name.lower()
            if key in merged:
                LOG.debug('overriding query instance "%s"', instance.name)
            merged[key] = instance
        return MetricCatalog(merged.values())

    def __repr__(self):
        return f'MetricCatalog({list(self)!r})'


class ConfigFileResult():
    """Outcome of loading one query configuration file."""

    def __init__(self, filename, hashsum='', error=None):
        self.filename = filename
        self.hashsum = hashsum
        self.error = error

    @property
    def failed(self):
        """True if the file could not be fully loaded."""
        return self.error is not None


def load_yaml(filename):
    """Load a YAML file."""
    with open(filename, 'rb') as yamlfile:
        content = yamlfile.read()
    return content, yaml.safe_load(content)


def config_files(path):
    """List the configuration files found at `path`."""
    if os.path.isdir(path):
        return sorted(os.path.join(path, name) for name in os.listdir(path)
                      if name.endswith(CONFIG_SUFFIXES))
    return [path]


def parse_instances(data, fail_fast=False):
    """Turn parsed YAML into validated QueryInstances.

    `data` is either a mapping of name to record or a list of records.

    Returns: tuple(list of QueryInstance, list of error messages)

    """
    if data is None:
        return [], []
    if isinstance(data, dict):
        records = list(data.items())
    elif isinstance(data, list):
        records = [(None, record) for record in data]
    else:
        raise ValidationError(f'expected a mapping or list of query instances, got {type(data).__name__}')

    instances = {}
    errors = []
    for name, record in records:
        try:
            instance = QueryInstance.from_dict(name, record)
            instance.check()
        except ValidationError as exc:
            if fail_fast:
                raise
            LOG.error('Excluding invalid query instance: %s', exc)
            errors.append(str(exc))
            continue
        key = instance.name.lower()
        if key in instances:
            LOG.warning('query instance "%s" defined more than once, using the last definition',
                        instance.name)
        instances[key] = instance
    return list(instances.values()), errors


def load_config(path, fail_fast=False):
    """Load user query instances from a YAML file or directory.

    Returns: tuple(list of QueryInstance, list of ConfigFileResult)

    Raises ConfigLoadError or ValidationError when `fail_fast` is set and a
    file or instance is invalid.

    """
    instances = []
    results = []
    for filename in config_files(path):
        result = ConfigFileResult(filename)
        results.append(result)
        try:
            content, data = load_yaml(filename)
        except (OSError, yaml.YAMLError) as exc:
            LOG.error('Failed to load query file "%s": %s', filename, exc)
            result.error = str(exc)
            if fail_fast:
                raise ConfigLoadError(filename, f'failed to load "{filename}": {exc}') from exc
            continue

        result.hashsum = hashlib.sha256(content).hexdigest()
        try:
            loaded, errors = parse_instances(data, fail_fast=fail_fast)
        except ValidationError as exc:
            if fail_fast:
                raise
            LOG.error('Failed to parse query file "%s": %s', filename, exc)
            result.error = str(exc)
            continue
        if errors:
            result.error = '; '.join(errors)
        LOG.info('Loaded %d query instances from "%s"', len(loaded), filename)
        instances.extend(loaded)
    return instances, results


# pylint: disable=line-too-long
def default_catalog():
    """Build the catalog of built-in query instances."""
    return MetricCatalog([
        QueryInstance(
            'pg_database',
            description='Database size',
            queries=[Query('SELECT pg_database.datname, pg_database_size(pg_database.datname) AS size_bytes FROM pg_database')],
            columns=[
                Column('datname', LABEL, 'Name of this database'),
                Column('size_bytes', GAUGE, 'Disk space used by the database'),
            ],
            ttl=60, timeout=1),
        QueryInstance(
            'pg_stat_bgwriter',
            description='Statistics about the background writer process',
            queries=[Query('SELECT * FROM pg_stat_bgwriter')],
            columns=[
                Column('checkpoints_timed', COUNTER, 'Number of scheduled checkpoints that have been performed'),
                Column('checkpoints_req', COUNTER, 'Number of requested checkpoints that have been performed'),
                Column('checkpoint_write_time', COUNTER, 'Total amount of time that has been spent in the portion of checkpoint processing where files are written to disk, in milliseconds'),
                Column('checkpoint_sync_time', COUNTER, 'Total amount of time that has been spent in the portion of checkpoint processing where files are synchronized to disk, in milliseconds'),
                Column('buffers_checkpoint', COUNTER, 'Number of buffers written during checkpoints'),
                Column('buffers_clean', COUNTER, 'Number of buffers written by the background writer'),
                Column('maxwritten_clean', COUNTER, 'Number of times the background writer stopped a cleaning scan because it had written too many buffers'),
                Column('buffers_backend', COUNTER, 'Number of buffers written directly by a backend'),
                Column('buffers_backend_fsync', COUNTER, 'Number of times a backend had to execute its own fsync call'),
                Column('buffers_alloc', COUNTER, 'Number of buffers allocated'),
                Column('stats_reset', COUNTER, 'Time at which these statistics were last reset'),
            ]),
        QueryInstance(
            'pg_stat_database',
            description='One row per database, showing database-wide statistics',
            queries=[Query('SELECT * FROM pg_stat_database')],
            columns=[
                Column('datid', LABEL, 'OID of a database'),
                Column('datname', LABEL, 'Name of this database'),
                Column('numbackends', GAUGE, 'Number of backends currently connected to this database'),
                Column('xact_commit', COUNTER, 'Number of transactions in this database that have been committed'),
                Column('xact_rollback', COUNTER, 'Number of transactions in this database that have been rolled back'),
                Column('blks_read', COUNTER, 'Number of disk blocks read in this database'),
                Column('blks_hit', COUNTER, 'Number of times disk blocks were found already in the buffer cache'),
                Column('tup_returned', COUNTER, 'Number of rows returned by queries in this database'),
                Column('tup_fetched', COUNTER, 'Number of rows fetched by queries in this database'),
                Column('tup_inserted', COUNTER, 'Number of rows inserted by queries in this database'),
                Column('tup_updated', COUNTER, 'Number of rows updated by queries in this database'),
                Column('tup_deleted', COUNTER, 'Number of rows deleted by queries in this database'),
                Column('conflicts', COUNTER, 'Number of queries canceled due to conflicts with recovery in this database'),
                Column('temp_files', COUNTER, 'Number of temporary files created by queries in this database'),
                Column('temp_bytes', COUNTER, 'Total amount of data written to temporary files by queries in this database'),
                Column('deadlocks', COUNTER, 'Number of deadlocks detected in this database'),
                Column('blk_read_time', COUNTER, 'Time spent reading data file blocks by backends in this database, in milliseconds'),
                Column('blk_write_time', COUNTER, 'Time spent writing data file blocks by backends in this database, in milliseconds'),
                Column('stats_reset', COUNTER, 'Time at which these statistics were last reset'),
            ]),
        QueryInstance(
            'pg_locks',
            description='Number of locks held per database and lock mode',
            queries=[Query("""
                    SELECT pg_database.datname,tmp.mode,COALESCE(count,0) as count
                    FROM ( VALUES ('accesssharelock'),
                                  ('rowsharelock'),
                                  ('rowexclusivelock'),
                                  ('shareupdateexclusivelock'),
                                  ('sharelock'),
                                  ('sharerowexclusivelock'),
                                  ('exclusivelock'),
                                  ('accessexclusivelock')
                         ) AS tmp(mode) CROSS JOIN pg_database
                    LEFT JOIN (
                      SELECT database, lower(mode) AS mode,count(*) AS count
                       FROM pg_locks WHERE database IS NOT NULL
                       GROUP BY database, lower(mode)
                    ) AS tmp2
                    ON tmp.mode=tmp2.mode and pg_database.oid = tmp2.database ORDER BY 1
                """)],
            columns=[
                Column('datname', LABEL, 'Name of this database'),
                Column('mode', LABEL, 'Type of Lock'),
                Column('count', GAUGE, 'Number of locks'),
            ]),
        QueryInstance(
            'pg_stat_replication',
            description='Replication statistics for each WAL sender process',
            queries=[
                Query(version_range='>=10.0.0', sql="""
                    SELECT *,
                    (case pg_is_in_recovery() when 't' then null
                        else pg_wal_lsn_diff(pg_current_wal_lsn(), replay_lsn)::float end) AS lsn_diff
                    FROM pg_stat_replication
                """),
                Query(version_range='>=9.2.0 <10.0.0', sql="""
                    SELECT *,
                    (case pg_is_in_recovery() when 't' then null
                        else pg_xlog_location_diff(pg_current_xlog_location(), replay_location)::float end) AS lsn_diff
                    FROM pg_stat_replication
                """),
            ],
            columns=[
                Column('pid', DISCARD, 'Process ID of a WAL sender process'),
                Column('usename', LABEL, 'Name of the user logged into this WAL sender process'),
                Column('application_name', LABEL, 'Name of the application that is connected to this WAL sender'),
                Column('client_addr', LABEL, 'IP address of the client connected to this WAL sender'),
                Column('state', LABEL, 'Current WAL sender state'),
                Column('sync_state', LABEL, 'Synchronous state of this standby server'),
                Column('sync_priority', GAUGE, 'Priority of this standby server for being chosen as the synchronous standby'),
                Column('lsn_diff', GAUGE, 'Lag in bytes between master and slave'),
            ]),
        QueryInstance(
            'pg_stat_activity',
            description='Connections per database and state',
            queries=[
                Query(version_range='>=9.2.0', sql="""
                    SELECT
                            pg_database.datname,
                            tmp.state,
                            COALESCE(count,0) as count,
                            COALESCE(max_tx_duration,0) as max_tx_duration
                    FROM ( VALUES
                        ('active'),
                        ('idle'),
                        ('idle in transaction'),
                        ('idle in transaction (aborted)'),
                        ('fastpath function call'),
                        ('disabled')
                    ) AS tmp(state) CROSS JOIN pg_database
                    LEFT JOIN ( SELECT
                        datname,
                        state,
                        count(*) AS count,
                        MAX(EXTRACT(EPOCH FROM now() - xact_start))::float AS max_tx_duration
                    FROM pg_stat_activity GROUP BY datname,state) AS tmp2
                    ON tmp.state = tmp2.state AND pg_database.datname = tmp2.datname
                """),
                Query(version_range='<9.2.0', sql="""
                    SELECT
                        datname,
                        'unknown' AS state,
                        COALESCE(count(*),0) AS count,
                        COALESCE(MAX(EXTRACT(EPOCH FROM now() - xact_start))::float,0) AS max_tx_duration
                    FROM pg_stat_activity GROUP BY datname
                """),
            ],
            columns=[
                Column('datname', LABEL, 'Name of this database'),
                Column('state', LABEL, 'connection state'),
                Column('count', GAUGE, 'number of connections in this state'),
                Column('max_tx_duration', GAUGE, 'max duration in seconds any active transaction has been running'),
            ]),
    ])


def build_catalog(config_path=None, defaults=None, fail_fast=False):
    """Merge user query instances from `config_path` into the defaults.

    Returns: tuple(MetricCatalog, list of ConfigFileResult)

    """
    catalog = defaults if defaults is not None else default_catalog()
    if not config_path:
        return catalog, []
    overrides, results = load_config(config_path, fail_fast=fail_fast)
    return catalog.merge(overrides), results
