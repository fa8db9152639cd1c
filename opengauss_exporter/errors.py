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
"""Exception types raised by the exporter."""


class ExporterError(Exception):
    """Base class for exporter errors."""


class ServerConnectionError(ExporterError):
    """The exporter could not connect to a database server."""

    def __init__(self, dsn, message):
        super().__init__(message)
        self.dsn = dsn


class ScrapeError(ExporterError):
    """A query instance failed against a reachable server."""

    def __init__(self, query_name, message):
        super().__init__(message)
        self.query_name = query_name


class VersionProbeError(ExporterError):
    """The server version could not be read or parsed."""


class ValidationError(ExporterError):
    """A query instance definition is invalid."""


class ConfigLoadError(ExporterError):
    """A query configuration file could not be read or parsed."""

    def __init__(self, filename, message):
        super().__init__(message)
        self.filename = filename
