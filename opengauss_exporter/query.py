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
"""Query instances and the mapping of result columns to Prometheus metrics."""

import datetime
import logging
import math
import re
from decimal import Decimal
from enum import Enum

from prometheus_client.core import CounterMetricFamily
from prometheus_client.core import GaugeMetricFamily

from opengauss_exporter.errors import ValidationError
from opengauss_exporter.version import parse_version_range

LOG = logging.getLogger(__name__)

STATUS_ENABLE = 'enable'
STATUS_DISABLE = 'disable'
STATUSES = (STATUS_ENABLE, STATUS_DISABLE)

INVALID_NAME_CHARS = re.compile(r'[^a-zA-Z0-9_:]')


# Describes how a queried row will be converted to Prometheus metric
class ColumnUsage(Enum):
    """ ColumnUsage enum. """
    DISCARD = 'discard'
    LABEL = 'label'
    GAUGE = 'gauge'
    COUNTER = 'counter'


USAGES = tuple(usage.value for usage in ColumnUsage)


def check_status(status):
    """Return `status` if it is a recognized status, raise otherwise."""
    if status not in STATUSES:
        raise ValidationError(f'invalid status "{status}", expected one of {", ".join(STATUSES)}')
    return status


def metric_name(*parts):
    """Join name parts into a valid Prometheus metric name."""
    return INVALID_NAME_CHARS.sub('_', '_'.join(part for part in parts if part))


def to_float(value):
    """Convert a column value into a sample value.

    Raises ValueError or TypeError for values that are not numeric.
    """
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, datetime.datetime):
        return value.timestamp()
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time()).timestamp()
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    if isinstance(value, bytes):
        value = value.decode()
    return float(value)


class Column():
    """Describes one result column and how it becomes metric data."""

    def __init__(self, name, usage=ColumnUsage.DISCARD.value, description='No Description'):
        self.name = name
        self.usage = usage.value if isinstance(usage, ColumnUsage) else usage
        self.description = description

    @property
    def kind(self):
        """The ColumnUsage of this column."""
        return ColumnUsage(self.usage)

    def check(self):
        """Raise ValidationError if the usage is not recognized."""
        if self.usage not in USAGES:
            raise ValidationError(f'column "{self.name}" has invalid usage "{self.usage}", '
                                  f'expected one of {", ".join(USAGES)}')

    @classmethod
    def from_dict(cls, record):
        """Build a Column from a configuration record."""
        if not isinstance(record, dict) or not record.get('name'):
            raise ValidationError(f'column definition {record!r} has no name')
        usage = record.get('usage', ColumnUsage.DISCARD.value)
        if isinstance(usage, str):
            usage = usage.strip().lower()
        return cls(str(record['name']),
                   usage=usage,
                   description=record.get('description') or record.get('desc') or 'No Description')

    def __repr__(self):
        return f'Column({self.name!r}, {self.usage!r})'


class Query():
    """ A SQL text bound to the range of server versions it supports.

    A query instance usually has one Query. Statistics views change between
    releases, so an instance may carry several variants and the one matching
    the server version is executed.

    """

    def __init__(self, sql, version_range='', status=STATUS_ENABLE, timeout=None):
        """ Constructor.

        Args:
            sql (str) A SQL Query.

            version_range (str) A version requirement, e.g. ">=9.2.0 <10.0.0".
                    An empty range matches every version.

            status (str) "enable" or "disable"

            timeout (float) Optional override of the instance timeout.

        """
        self._sql = sql
        self._version_range = parse_version_range(version_range)
        self._status = status
        self._timeout = timeout

    @property
    def sql(self):
        """SQL property."""
        return self._sql

    @property
    def version_range(self):
        """Version range property."""
        return self._version_range

    @property
    def status(self):
        """Status property."""
        return self._status

    @property
    def timeout(self):
        """Timeout property."""
        return self._timeout

    @property
    def enabled(self):
        """True if the query may be executed."""
        return self._status == STATUS_ENABLE

    def is_supported(self, version):
        """compare given version to the supported version range.

        Returns: bool
        """
        return self._version_range.accepts(version)

    @classmethod
    def from_dict(cls, record):
        """Build a Query from a configuration record."""
        if isinstance(record, str):
            return cls(record)
        if not isinstance(record, dict) or not record.get('sql'):
            raise ValidationError(f'query definition {record!r} has no sql')
        version_range = record.get('supported_version_range',
                                   record.get('version', record.get('supportedVersions', '')))
        timeout = record.get('timeout')
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f'query definition has invalid timeout: {exc}') from exc
            if not math.isfinite(timeout):
                raise ValidationError(f'query definition has non-finite timeout {timeout}')
        return cls(record['sql'],
                   version_range=version_range or '',
                   status=record.get('status') or STATUS_ENABLE,
                   timeout=timeout)


# pylint: disable=too-many-instance-attributes
class QueryInstance():
    """ A named metric group.

    Holds the version variants of one query, the columns it returns and the
    scheduling metadata used by the server when scraping it.

    """

    # pylint: disable=too-many-arguments
    def __init__(self, name, queries, columns, description='', status=STATUS_ENABLE,
                 ttl=0, timeout=0, priority=0):
        self.name = name
        self.description = description
        self.queries = list(queries)
        self.columns = list(columns)
        self.status = status
        self.ttl = ttl
        self.timeout = timeout
        self.priority = priority
        self._column_index = {column.name.lower(): column for column in self.columns}

    @property
    def enabled(self):
        """True if the instance may be executed."""
        return self.status == STATUS_ENABLE

    def check(self):
        """Validate statuses and column usages.

        A negative timeout is allowed and means the query runs without a
        deadline.
        """
        try:
            check_status(self.status)
            for query in self.queries:
                check_status(query.status)
            for column in self.columns:
                column.check()
        except ValidationError as exc:
            raise ValidationError(f'query instance "{self.name}": {exc}') from exc

    def timeout_duration(self):
        """Return the timeout as a timedelta; negative means unbounded."""
        return datetime.timedelta(seconds=self.timeout)

    def select_query(self, version):
        """Return the first enabled Query supporting `version`, or None."""
        for query in self.queries:
            if query.enabled and query.is_supported(version):
                return query
        return None

    def get_column(self, name):
        """Case-insensitive column lookup; None for unknown columns."""
        return self._column_index.get(name.lower())

    def label_columns(self):
        """Columns whose values become labels."""
        return [col for col in self.columns if col.usage == ColumnUsage.LABEL.value]

    def metric_columns(self):
        """Columns whose values become samples."""
        return [col for col in self.columns
                if col.usage in (ColumnUsage.GAUGE.value, ColumnUsage.COUNTER.value)]

    def map_rows(self, column_names, rows, const_labels=None):
        """Convert a result set into metric families.

        Args:
            column_names (list) result column names, in result order
            rows (list) result rows as sequences
            const_labels (dict) labels attached to every sample

        Returns: list of prometheus_client metric families, in column
            declaration order.

        """
        const_labels = const_labels or {}
        positions = {}
        for index, col_name in enumerate(column_names):
            column = self.get_column(col_name)
            if column is None:
                LOG.debug('%s: ignoring unknown column "%s"', self.name, col_name)
                continue
            positions.setdefault(column.name, index)

        label_columns = self.label_columns()
        label_names = [metric_name(col.name) for col in label_columns]
        extra = {key: val for key, val in const_labels.items() if key not in label_names}
        label_names.extend(extra)

        families = []
        for column in self.metric_columns():
            if column.name not in positions:
                continue
            name = metric_name(self.name, column.name)
            if column.kind == ColumnUsage.COUNTER:
                family = CounterMetricFamily(name, column.description, labels=label_names)
            else:
                family = GaugeMetricFamily(name, column.description, labels=label_names)
            index = positions[column.name]
            for row in rows:
                try:
                    value = to_float(row[index])
                except (TypeError, ValueError):
                    LOG.warning('%s: column "%s" value %r is not numeric, skipping',
                                self.name, column.name, row[index])
                    continue
                labels = [self._label_value(row, positions.get(col.name)) for col in label_columns]
                labels.extend(str(val) for val in extra.values())
                family.add_metric(labels, value)
            families.append(family)
        return families

    @staticmethod
    def _label_value(row, index):
        if index is None or row[index] is None:
            return ''
        value = row[index]
        if isinstance(value, bytes):
            return value.decode(errors='replace')
        return str(value)

    @classmethod
    def from_dict(cls, name, record):
        """Build a QueryInstance from a configuration record.

        Raises ValidationError for structurally invalid records. Status and
        usage values are validated by check().
        """
        if not isinstance(record, dict):
            raise ValidationError(f'query instance "{name}" must be a mapping')
        name = str(record.get('name') or name or '')
        if not name:
            raise ValidationError('query instance has no name')

        queries = record.get('queries', record.get('query'))
        if isinstance(queries, (str, dict)):
            queries = [queries]
        if not queries:
            raise ValidationError(f'query instance "{name}" has no queries')

        columns = [Column.from_dict(item) for item in
                   record.get('columns', record.get('metrics')) or []]
        seen = set()
        for column in columns:
            if column.name.lower() in seen:
                raise ValidationError(f'query instance "{name}" has duplicate column "{column.name}"')
            seen.add(column.name.lower())

        try:
            ttl = float(record.get('ttl') or 0)
            timeout = float(record.get('timeout') or 0)
            priority = int(record.get('priority') or 0)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError(f'query instance "{name}": {exc}') from exc
        if not (math.isfinite(ttl) and math.isfinite(timeout)):
            raise ValidationError(f'query instance "{name}" has non-finite ttl or timeout')
        if ttl < 0:
            raise ValidationError(f'query instance "{name}" has negative ttl {ttl}')

        try:
            parsed = [Query.from_dict(item) for item in queries]
        except ValidationError as exc:
            raise ValidationError(f'query instance "{name}": {exc}') from exc

        return cls(name,
                   queries=parsed,
                   columns=columns,
                   description=record.get('description') or record.get('desc') or '',
                   status=record.get('status') or STATUS_ENABLE,
                   ttl=ttl,
                   timeout=timeout,
                   priority=priority)

    def __repr__(self):
        return f'QueryInstance({self.name!r})'
