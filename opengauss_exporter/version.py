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
"""Server version parsing and version range matching."""

import operator
import re

from packaging.version import InvalidVersion
from packaging.version import Version

from opengauss_exporter.errors import ValidationError
from opengauss_exporter.errors import VersionProbeError

# regex to identify openGauss and postgresql version numbers
OPENGAUSS_VERSION_RE = re.compile(r'\((openGauss|MogDB|Vastbase\w*) ((\d+)(\.\d+)?(\.\d+)?)')
PG_VERSION_RE = re.compile(r'^(\w+) ((\d+)(\.\d+)?(\.\d+)?)')
RANGE_CLAUSE_RE = re.compile(r'^(>=|<=|==|!=|>|<|=)?v?(\d+(?:\.\d+){0,2})$')

OPERATORS = {
    '>=': operator.ge,
    '<=': operator.le,
    '>': operator.gt,
    '<': operator.lt,
    '==': operator.eq,
    '=': operator.eq,
    '!=': operator.ne,
}


def _semantic(text):
    """Pad a dotted version to major.minor.micro."""
    parts = text.split('.')
    parts += ['0'] * (3 - len(parts))
    return Version('.'.join(parts[:3]))


class VersionRange():
    """A set of version comparisons.

    The range is a list of alternatives; a version is accepted when every
    comparison of at least one alternative holds. An empty range accepts
    every version.
    """

    def __init__(self, text, alternatives):
        self.text = text
        self.alternatives = alternatives

    def accepts(self, version):
        """Return True if `version` satisfies this range."""
        if not self.alternatives:
            return True
        for clauses in self.alternatives:
            if all(oper(version, bound) for oper, bound in clauses):
                return True
        return False

    def __str__(self):
        return self.text

    def __repr__(self):
        return f'VersionRange({self.text!r})'


def parse_version_range(versions):
    """Parse a version range.

    Args:
        versions (str) A version range stating a version requirement.
                Comparisons separated by whitespace or commas must all
                hold, alternatives are separated by "||".
                e.g. ">=1.0.0 <2.0.0", ">=1.0,<2.0" or "<9.2.0 || >=10.0.0"

    Returns: VersionRange

    """
    text = (versions or '').strip()
    alternatives = []
    if not text:
        return VersionRange(text, alternatives)

    for alternative in text.split('||'):
        clauses = []
        # allow "> 1.0" as well as ">1.0"
        compact = re.sub(r'(>=|<=|==|!=|>|<|=)\s+', r'\1', alternative)
        for item in re.split(r'[\s,]+', compact.strip()):
            if not item:
                continue
            match = RANGE_CLAUSE_RE.match(item)
            if not match:
                raise ValidationError(f'invalid version range "{versions}": bad clause "{item}"')
            oper, ver = match.groups()
            clauses.append((OPERATORS[oper or '=='], _semantic(ver)))
        if not clauses:
            raise ValidationError(f'invalid version range "{versions}": empty alternative')
        alternatives.append(clauses)
    return VersionRange(text, alternatives)


def _match_version(version_string):
    if not isinstance(version_string, str):
        raise VersionProbeError(f'unexpected version value {version_string!r}')
    match = OPENGAUSS_VERSION_RE.search(version_string)
    if not match:
        match = PG_VERSION_RE.match(version_string.strip())
    if not match:
        raise VersionProbeError(f'could not find a version number in "{version_string}"')
    return match


def parse_version_sem(version_string):
    """Extract the semantic version from the output of SELECT version().

    Returns: packaging.version.Version

    """
    match = _match_version(version_string)
    try:
        return _semantic(match.group(2))
    except InvalidVersion as exc:
        raise VersionProbeError(f'could not parse version "{match.group(2)}": {exc}') from exc


def parse_version(version_string):
    """Return the product name and version, e.g. "openGauss 1.0.0"."""
    match = _match_version(version_string)
    return f'{match.group(1)} {match.group(2)}'


def short_version(version):
    """Format a version as major.minor.micro."""
    return f'{version.major}.{version.minor}.{version.micro}'
