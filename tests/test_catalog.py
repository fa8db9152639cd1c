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
"""Tests for the metric catalog and configuration loading."""

import hashlib

import pytest

from opengauss_exporter.catalog import MetricCatalog
from opengauss_exporter.catalog import build_catalog
from opengauss_exporter.catalog import default_catalog
from opengauss_exporter.catalog import load_config
from opengauss_exporter.catalog import parse_instances
from opengauss_exporter.errors import ConfigLoadError
from opengauss_exporter.errors import ValidationError
from opengauss_exporter.query import Column
from opengauss_exporter.query import Query
from opengauss_exporter.query import QueryInstance

OVERRIDE_YAML = """
PG_LOCKS:
  description: overridden locks
  ttl: 10
  queries:
    - sql: SELECT datname, count(*) AS count FROM pg_locks JOIN pg_database ON oid = database GROUP BY 1
  columns:
    - name: datname
      usage: label
    - name: count
      usage: gauge
"""

NEW_YAML = """
- name: pg_custom
  queries:
    - select 1 as value
  columns:
    - name: value
      usage: gauge
"""

INVALID_YAML = """
pg_broken:
  status: sometimes
  queries:
    - select 1
pg_fine:
  queries:
    - select 1 as one
  columns:
    - name: one
      usage: counter
"""


def instance(name):
    return QueryInstance(name, queries=[Query('select 1')], columns=[Column('a', 'gauge')])


def test_catalog_lookup_ignores_case():
    catalog = MetricCatalog([instance('pg_one')])
    assert catalog['PG_ONE'].name == 'pg_one'
    assert 'Pg_One' in catalog
    assert 'pg_two' not in catalog
    with pytest.raises(KeyError):
        catalog['pg_two']  # pylint: disable=pointless-statement


def test_catalog_rejects_duplicates():
    with pytest.raises(ValidationError):
        MetricCatalog([instance('pg_one'), instance('PG_ONE')])


def test_catalog_rejects_invalid_instance():
    bad = QueryInstance('pg_bad', queries=[Query('select 1')], columns=[], status='maybe')
    with pytest.raises(ValidationError):
        MetricCatalog([bad])


def test_merge_is_pure():
    defaults = MetricCatalog([instance('pg_one'), instance('pg_two')])
    replacement = instance('PG_ONE')
    merged = defaults.merge([replacement, instance('pg_three')])

    assert list(defaults) == ['pg_one', 'pg_two']
    assert list(merged) == ['PG_ONE', 'pg_two', 'pg_three']
    assert merged['pg_one'] is replacement
    assert merged['pg_two'] is defaults['pg_two']


def test_default_catalog():
    catalog = default_catalog()
    assert {'pg_database', 'pg_stat_bgwriter', 'pg_stat_database', 'pg_locks',
            'pg_stat_replication', 'pg_stat_activity'} <= set(catalog)
    for item in catalog.values():
        item.check()


def test_override_round_trip(tmp_path):
    """Overriding one built-in keeps the size and leaves the others alone."""
    path = tmp_path / 'queries.yml'
    path.write_text(OVERRIDE_YAML)
    defaults = default_catalog()

    catalog, results = build_catalog(str(path), defaults=defaults)

    assert len(catalog) == len(defaults)
    locks = catalog['pg_locks']
    assert locks.description == 'overridden locks'
    assert locks.ttl == 10
    assert [col.name for col in locks.columns] == ['datname', 'count']
    for name in defaults:
        if name != 'pg_locks':
            assert catalog[name] is defaults[name]
    assert not results[0].failed
    assert results[0].hashsum == hashlib.sha256(OVERRIDE_YAML.encode()).hexdigest()


def test_new_instance_is_added(tmp_path):
    path = tmp_path / 'queries.yaml'
    path.write_text(NEW_YAML)
    catalog, _ = build_catalog(str(path), defaults=default_catalog())
    assert len(catalog) == len(default_catalog()) + 1
    assert list(catalog)[-1] == 'pg_custom'


def test_load_directory(tmp_path):
    (tmp_path / 'a.yml').write_text(NEW_YAML)
    (tmp_path / 'b.yaml').write_text(OVERRIDE_YAML)
    (tmp_path / 'notes.txt').write_text('ignored')
    instances, results = load_config(str(tmp_path))
    assert [item.name for item in instances] == ['pg_custom', 'PG_LOCKS']
    assert [result.filename for result in results] == [str(tmp_path / 'a.yml'),
                                                       str(tmp_path / 'b.yaml')]


def test_invalid_instance_is_excluded(tmp_path):
    path = tmp_path / 'queries.yml'
    path.write_text(INVALID_YAML)
    instances, results = load_config(str(path))
    assert [item.name for item in instances] == ['pg_fine']
    assert results[0].failed
    assert 'pg_broken' in results[0].error


def test_invalid_instance_fail_fast(tmp_path):
    path = tmp_path / 'queries.yml'
    path.write_text(INVALID_YAML)
    with pytest.raises(ValidationError):
        load_config(str(path), fail_fast=True)


def test_unparsable_file(tmp_path):
    path = tmp_path / 'queries.yml'
    path.write_text('pg_x: [unclosed')
    instances, results = load_config(str(path))
    assert instances == []
    assert results[0].failed
    assert results[0].hashsum == ''


def test_unparsable_file_fail_fast(tmp_path):
    path = tmp_path / 'queries.yml'
    path.write_text('pg_x: [unclosed')
    with pytest.raises(ConfigLoadError):
        load_config(str(path), fail_fast=True)


def test_missing_file(tmp_path):
    _, results = load_config(str(tmp_path / 'missing.yml'))
    assert results[0].failed


def test_parse_instances_rejects_scalar():
    with pytest.raises(ValidationError):
        parse_instances('just a string')


def test_parse_instances_empty():
    assert parse_instances(None) == ([], [])
