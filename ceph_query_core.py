#!/usr/bin/env python3
"""
Ceph Query Tool - Core Module

Pure Python data collection with NO external dependencies.
This module shells out to the Ceph administrative CLIs (ceph, rados, rbd,
osdmaptool), extracts the fields it needs from their JSON output and hands
back plain rows that the display frontends render.

Usage:
    from ceph_query_core import CephContext, CephQuery

    context = CephContext.from_environment()
    query = CephQuery(context)
    rows = query.hosts_for_pg("1.2f")
"""

VERSION = "1.1.0"

import subprocess
import json
import sys
import os
import re
import shutil
import tempfile
from contextlib import contextmanager

DEBUG = False

# CRUSH_ITEM_NONE: hole in an erasure-coded acting set
OSD_NONE = 2147483647

MAPPERS = ('osd-map', 'osdmaptool')

# metric name -> (stat_sum field, display label)
PG_METRICS = {
    'write-ops': ('num_write', 'Write ops'),
    'write-kb': ('num_write_kb', 'Write KB'),
    'read-ops': ('num_read', 'Read ops'),
    'read-kb': ('num_read_kb', 'Read KB'),
}


class CephQueryError(Exception):
    """Base class for every failure that ends a query with exit status 1."""

    exit_code = 1


class DependencyError(CephQueryError):
    """A required executable is missing or does not answer its version probe."""


class ConnectivityError(CephQueryError):
    """The cluster cannot be reached, or access was denied."""


class ConfigError(CephQueryError):
    """Invalid CEPH_QUERY_* setting."""


class UsageError(CephQueryError):
    """Bad command name or argument list."""


class NotFoundError(CephQueryError):
    """A referenced host, OSD, pool or image does not exist."""


class CommandError(CephQueryError):
    """An external command failed or produced unusable output."""

    def __init__(self, message, command=None, returncode=None, stderr=None):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


def debug_print(message):
    """Print debug messages if DEBUG is enabled."""
    if DEBUG:
        print(f"[DEBUG] {message}", file=sys.stderr)


def run_command(command, is_json=False, silent=False):
    """
    Run a command and return its output.

    Returns the stripped stdout, or the decoded document when is_json is set.
    Raises CommandError when the command fails, cannot be started, or returns
    empty or malformed JSON.
    """
    if not silent:
        debug_print(f"Running: {' '.join(command)}")

    try:
        result = subprocess.run(command, capture_output=True, text=True, check=True)
    except FileNotFoundError:
        raise CommandError(f"{command[0]}: command not found", command=command)
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or '').strip()
        if not silent:
            debug_print(f"Command failed: {' '.join(command)}")
            debug_print(f"Error: {stderr}")
        raise CommandError(
            f"{' '.join(command)} failed (exit {e.returncode}): {stderr or 'no error output'}",
            command=command, returncode=e.returncode, stderr=stderr)

    if not is_json:
        return result.stdout.strip()

    if not result.stdout.strip():
        raise CommandError(f"{' '.join(command)} returned no output", command=command)
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        debug_print(f"JSON decode failed: {e}")
        raise CommandError(f"{' '.join(command)} returned malformed JSON: {e}", command=command)


def natural_sort_key(text):
    """Numeric-aware sort key, so that osd.2 sorts before osd.10."""
    return [int(part) if part.isdigit() else part
            for part in re.split(r'(\d+)', str(text))]


PGID_RE = re.compile(r'^(\d+)\.([0-9a-f]+)(?:s(\d+))?$')


def pgid_key(pgid):
    """Order PG ids by pool, then by their hexadecimal sequence number."""
    match = PGID_RE.match(str(pgid))
    if not match:
        return (sys.maxsize, 0, 0, str(pgid))
    shard = int(match.group(3)) if match.group(3) is not None else -1
    return (int(match.group(1)), int(match.group(2), 16), shard, str(pgid))


def is_pgid(text):
    return bool(PGID_RE.match(str(text)))


def parse_osd_id(value):
    """Accept 3, '3' or 'osd.3' and return the integer id."""
    if isinstance(value, int):
        return value
    match = re.match(r'^(?:osd\.)?(\d+)$', str(value).strip())
    if not match:
        raise UsageError(f"invalid OSD id: {value!r} (expected N or osd.N)")
    return int(match.group(1))


def osd_name(osd_id):
    if osd_id is None or osd_id < 0 or osd_id == OSD_NONE:
        return 'none'
    return f"osd.{osd_id}"


def pg_stats(document):
    """
    Return the PG record list from a `ceph pg dump pgs|pgs_brief` document.

    Current releases wrap the list as {"pg_ready": ..., "pg_stats": [...]},
    older ones return the bare list.
    """
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        if 'pg_stats' in document:
            return document['pg_stats']
        if 'pg_map' in document:
            return document['pg_map'].get('pg_stats', [])
    raise CommandError("unexpected PG dump layout")


def select_extreme(records, value, ident, key=None, most=True):
    """
    Pick the record with the largest (most=True) or smallest value.

    Ties go to the record with the lowest identifier, ordered by key.
    """
    key = key or (lambda x: x)
    best = None
    best_value = None
    best_key = None

    for record in records:
        record_value = value(record)
        record_key = key(ident(record))
        if best is None:
            better = True
        elif record_value == best_value:
            better = record_key < best_key
        elif most:
            better = record_value > best_value
        else:
            better = record_value < best_value

        if better:
            best, best_value, best_key = record, record_value, record_key

    if best is None:
        raise CommandError("no records to select from")
    return best


OSDMAPTOOL_RE = re.compile(
    r"->\s*(?P<pgid>\d+\.[0-9a-f]+)\s*->\s*(?:up\s*\()?\[(?P<osds>[^\]]*)\]")


def parse_osdmaptool_mapping(text):
    """
    Extract (pgid, [osd, ...]) from `osdmaptool --test-map-object` output.

    Handles both the classic " object 'x' -> 1.2f -> [3,1,4]" line and the
    newer "-> up ([3,1,4], p3) acting ([3,1,4], p3)" form. Only the first
    (up) set is read.
    """
    match = OSDMAPTOOL_RE.search(text or '')
    if not match:
        raise CommandError(f"could not parse osdmaptool output: {text!r}")
    osds = [int(item) for item in match.group('osds').replace(' ', '').split(',') if item]
    return match.group('pgid'), osds


def kb_to_gb(kb):
    return kb / 1024.0 / 1024.0


def bytes_to_mb(size_bytes):
    return size_bytes / 1024.0 / 1024.0


class CephContext:
    """
    Connection settings shared by every external invocation.

    Built once per run (normally from the environment) and passed to
    CephQuery; nothing here is process-wide.
    """

    def __init__(self, conf=None, keyring=None, user=None, cluster=None,
                 connect_timeout=10, mapper='osd-map', sudo=False):
        if mapper not in MAPPERS:
            raise ConfigError(f"unknown object mapper {mapper!r} (choose from {', '.join(MAPPERS)})")
        self.conf = conf
        self.keyring = keyring
        self.user = user
        self.cluster = cluster
        self.connect_timeout = connect_timeout
        self.mapper = mapper
        self.sudo = sudo

    @classmethod
    def from_environment(cls, environ=None):
        """Read CEPH_QUERY_* variables."""
        environ = os.environ if environ is None else environ

        timeout = environ.get('CEPH_QUERY_TIMEOUT', '10')
        try:
            timeout = int(timeout)
        except ValueError:
            raise ConfigError(f"CEPH_QUERY_TIMEOUT must be an integer, got {timeout!r}")
        if timeout <= 0:
            raise ConfigError("CEPH_QUERY_TIMEOUT must be positive")

        sudo = environ.get('CEPH_QUERY_SUDO', '').strip().lower() in ('1', 'true', 'yes', 'on')

        return cls(
            conf=environ.get('CEPH_QUERY_CONF') or None,
            keyring=environ.get('CEPH_QUERY_KEYRING') or None,
            user=environ.get('CEPH_QUERY_USER') or None,
            cluster=environ.get('CEPH_QUERY_CLUSTER') or None,
            connect_timeout=timeout,
            mapper=environ.get('CEPH_QUERY_MAPPER') or 'osd-map',
            sudo=sudo,
        )

    def _connection_args(self):
        args = []
        if self.cluster:
            args += ['--cluster', self.cluster]
        if self.conf:
            args += ['--conf', self.conf]
        if self.keyring:
            args += ['--keyring', self.keyring]
        if self.user:
            args += ['--id', self.user]
        return args

    def _wrap(self, command):
        if self.sudo:
            return ['sudo'] + command
        return command

    def ceph(self, *args):
        return self._wrap(['ceph'] + self._connection_args()
                          + ['--connect-timeout', str(self.connect_timeout)] + list(args))

    def rados(self, *args):
        return self._wrap(['rados'] + self._connection_args() + list(args))

    def rbd(self, *args):
        return self._wrap(['rbd'] + self._connection_args() + list(args))

    def osdmaptool(self, *args):
        return ['osdmaptool'] + list(args)

    def run(self, command, is_json=False, silent=False):
        return run_command(command, is_json=is_json, silent=silent)


def check_dependencies(context):
    """
    Verify the Ceph CLIs are installed and answer a version probe.

    osdmaptool is only needed for the offline object mapper.
    """
    tools = ['ceph', 'rados', 'rbd']
    if context.mapper == 'osdmaptool':
        tools.append('osdmaptool')

    missing = [tool for tool in tools if not shutil.which(tool)]
    if missing:
        raise DependencyError(f"required command(s) not found in PATH: {', '.join(missing)}")

    for tool in ('ceph', 'rados', 'rbd'):
        try:
            version = context.run([tool, '--version'], silent=True)
        except CommandError as e:
            raise DependencyError(f"{tool} --version failed: {e}")
        debug_print(f"{tool}: {version.splitlines()[0] if version else 'unknown version'}")


def check_connectivity(context):
    """Make sure the monitors answer and we are allowed to talk to them."""
    try:
        status = context.run(context.ceph('status', '--format', 'json'), is_json=True)
    except CommandError as e:
        raise ConnectivityError(f"cannot connect to the cluster: {e.stderr or e}")

    if not isinstance(status, dict) or 'fsid' not in status:
        raise ConnectivityError("cluster status did not include an fsid")
    debug_print(f"Connected to cluster {status['fsid']}")
    return status


class CephQuery:
    """All query operations. Each returns a list of rows (dicts or scalars)."""

    def __init__(self, context):
        self.context = context
        self._locations = {}

    # ---- raw collection ---------------------------------------------------

    def _ceph_json(self, *args):
        return self.context.run(self.context.ceph(*args, '--format', 'json'), is_json=True)

    def _rbd_json(self, *args):
        return self.context.run(self.context.rbd(*args, '--format', 'json'), is_json=True)

    def get_osd_tree(self):
        tree = self._ceph_json('osd', 'tree')
        if not isinstance(tree, dict) or 'nodes' not in tree:
            raise CommandError("ceph osd tree returned no nodes")
        debug_print(f"OSD tree: {len(tree['nodes'])} nodes")
        return tree

    def get_osd_df(self):
        df = self._ceph_json('osd', 'df')
        if not isinstance(df, dict) or 'nodes' not in df:
            raise CommandError("ceph osd df returned no nodes")
        debug_print(f"OSD df: {len(df['nodes'])} OSDs")
        return df['nodes']

    def get_pg_stats(self, brief=False):
        stats = pg_stats(self._ceph_json('pg', 'dump', 'pgs_brief' if brief else 'pgs'))
        debug_print(f"PG dump: {len(stats)} PGs")
        return stats

    def get_pools(self):
        pools = self._ceph_json('osd', 'lspools')
        return sorted(pools, key=lambda p: p.get('poolnum', 0))

    # ---- location resolution ----------------------------------------------

    def locate_osd(self, osd):
        """Return the CRUSH host of an OSD."""
        osd_id = parse_osd_id(osd)
        if osd_id in self._locations:
            return self._locations[osd_id]

        try:
            found = self._ceph_json('osd', 'find', str(osd_id))
        except CommandError as e:
            if e.returncode == 2 or 'ENOENT' in (e.stderr or ''):
                raise NotFoundError(f"osd.{osd_id} does not exist")
            raise
        location = found.get('crush_location') or {}
        host = location.get('host') or found.get('host')
        if not host:
            raise NotFoundError(f"no host in crush location of osd.{osd_id}")

        debug_print(f"osd.{osd_id} -> {host}")
        self._locations[osd_id] = host
        return host

    def _locate_or_none(self, osd_id):
        if osd_id is None or osd_id < 0 or osd_id == OSD_NONE:
            return 'none'
        return self.locate_osd(osd_id)

    # ---- hosts --------------------------------------------------------------

    @staticmethod
    def _host_nodes(tree):
        return [node for node in tree['nodes'] if node.get('type') == 'host']

    @staticmethod
    def _find_host(tree, host):
        for node in tree['nodes']:
            if node.get('type') == 'host' and node.get('name') == host:
                return node
        raise NotFoundError(f"host {host!r} not found in the OSD tree")

    @staticmethod
    def _host_osd_nodes(tree, host_node):
        """OSD nodes nested under a host node, at any depth."""
        by_id = {node['id']: node for node in tree['nodes']}
        osds = []
        pending = list(host_node.get('children', []))
        while pending:
            child = by_id.get(pending.pop(0))
            if child is None:
                continue
            if child.get('type') == 'osd':
                osds.append(child)
            else:
                pending.extend(child.get('children', []))
        return sorted(osds, key=lambda node: natural_sort_key(node['name']))

    @classmethod
    def osd_hosts(cls, tree):
        """Map every OSD id in the tree to its host name."""
        mapping = {}
        for host in cls._host_nodes(tree):
            for osd in cls._host_osd_nodes(tree, host):
                mapping[osd['id']] = host['name']
        return mapping

    def list_hosts(self):
        tree = self.get_osd_tree()
        return sorted((node['name'] for node in self._host_nodes(tree)), key=natural_sort_key)

    def osds_for_host(self, host):
        tree = self.get_osd_tree()
        return [node['name'] for node in self._host_osd_nodes(tree, self._find_host(tree, host))]

    @classmethod
    def _usage_row(cls, tree, host_node, df_by_id):
        used = avail = total = 0
        osds = cls._host_osd_nodes(tree, host_node)
        for osd in osds:
            if osd['id'] not in df_by_id:
                debug_print(f"{osd['name']} on {host_node['name']} has no usage in ceph osd df, counted as 0 KB")
            stats = df_by_id.get(osd['id'], {})
            used += stats.get('kb_used', 0)
            avail += stats.get('kb_avail', 0)
            total += stats.get('kb', 0)
        return {
            'Host': host_node['name'],
            'OSDs': len(osds),
            'Used GB': f"{kb_to_gb(used):.2f}",
            'Avail GB': f"{kb_to_gb(avail):.2f}",
            'Total GB': f"{kb_to_gb(total):.2f}",
        }

    def host_usage(self, host):
        tree = self.get_osd_tree()
        host_node = self._find_host(tree, host)
        df_by_id = {node['id']: node for node in self.get_osd_df()}
        return [self._usage_row(tree, host_node, df_by_id)]

    def all_hosts_usage(self):
        tree = self.get_osd_tree()
        df_by_id = {node['id']: node for node in self.get_osd_df()}
        hosts = sorted(self._host_nodes(tree), key=lambda node: natural_sort_key(node['name']))
        return [self._usage_row(tree, host, df_by_id) for host in hosts]

    # ---- placement groups ---------------------------------------------------

    def hosts_for_pg(self, pgid):
        """One row per acting OSD, in acting order; the first is the primary."""
        if not is_pgid(pgid):
            raise UsageError(f"invalid PG id: {pgid!r}")

        mapping = self._ceph_json('pg', 'map', pgid)
        acting = mapping.get('acting') or []
        if not acting:
            raise CommandError(f"PG {pgid} has an empty acting set")

        rows = []
        for position, osd_id in enumerate(acting):
            rows.append({
                'PG': mapping.get('pgid', pgid),
                'OSD': osd_name(osd_id),
                'Host': self._locate_or_none(osd_id),
                'Role': 'primary' if position == 0 else 'replica',
            })
        return rows

    def pg_extreme(self, metric, most=True):
        """PG with the highest (or lowest) read/write counter."""
        if metric not in PG_METRICS:
            raise UsageError(f"unknown PG metric {metric!r}")
        field, label = PG_METRICS[metric]

        pg = select_extreme(
            self.get_pg_stats(),
            value=lambda record: record.get('stat_sum', {}).get(field, 0),
            ident=lambda record: record['pgid'],
            key=pgid_key,
            most=most)

        primary = pg.get('acting_primary')
        if primary is None:
            acting = pg.get('acting') or []
            primary = acting[0] if acting else None

        debug_print(f"{'max' if most else 'min'} {field}: PG {pg['pgid']}")
        return [{
            'PG': pg['pgid'],
            label: pg.get('stat_sum', {}).get(field, 0),
            'OSD': osd_name(primary),
            'Host': self._locate_or_none(primary),
        }]

    # ---- OSDs ---------------------------------------------------------------

    def osd_extreme(self, most=True):
        """Most or least used OSD by kb_used."""
        osd = select_extreme(
            self.get_osd_df(),
            value=lambda node: node.get('kb_used', 0),
            ident=lambda node: node['id'],
            most=most)

        return [{
            'OSD': osd.get('name') or osd_name(osd['id']),
            'Used KB': osd.get('kb_used', 0),
            'Avail KB': osd.get('kb_avail', 0),
            'Total KB': osd.get('kb', 0),
            'Host': self.locate_osd(osd['id']),
        }]

    def host_for_osd(self, osd):
        osd_id = parse_osd_id(osd)
        return [{'OSD': osd_name(osd_id), 'Host': self.locate_osd(osd_id)}]

    def pgs_for_osd(self, osd, primary_only=False):
        osd_id = parse_osd_id(osd)
        tree = self.get_osd_tree()
        tree_ids = {node['id'] for node in tree['nodes'] + tree.get('stray', []) if node.get('type', 'osd') == 'osd'}
        if osd_id not in tree_ids:
            raise NotFoundError(f"osd.{osd_id} does not exist")

        pgids = []
        for pg in self.get_pg_stats(brief=True):
            if primary_only:
                if pg.get('acting_primary') == osd_id:
                    pgids.append(pg['pgid'])
            elif osd_id in (pg.get('acting') or []):
                pgids.append(pg['pgid'])
        return sorted(pgids, key=pgid_key)

    # ---- pools and images ---------------------------------------------------

    def list_pools(self):
        return [pool['poolname'] for pool in self.get_pools()]

    def pool_id(self, pool):
        for entry in self.get_pools():
            if entry.get('poolname') == pool:
                return entry['poolnum']
        raise NotFoundError(f"pool {pool!r} does not exist")

    def list_images(self, pool):
        return self._rbd_json('ls', pool)

    def _require_image(self, pool, image):
        if image not in self.list_images(pool):
            raise NotFoundError(f"image {pool}/{image} does not exist")

    def _prefix(self, pool, image):
        info = self._rbd_json('info', f"{pool}/{image}")
        prefix = info.get('block_name_prefix') if isinstance(info, dict) else None
        if not prefix:
            raise CommandError(f"image {pool}/{image} has no block name prefix")
        return prefix

    def _image_objects(self, pool, prefix):
        output = self.context.run(self.context.rados('--pool', pool, 'ls'))
        marker = prefix + '.'
        objects = [line.strip() for line in output.splitlines() if line.strip().startswith(marker)]
        debug_print(f"{len(objects)} objects with prefix {prefix} in {pool}")
        return objects

    def image_prefix(self, pool, image):
        self._require_image(pool, image)
        return [{'Pool': pool, 'Image': image, 'Prefix': self._prefix(pool, image)}]

    def image_object_count(self, pool, image):
        self._require_image(pool, image)
        prefix = self._prefix(pool, image)
        objects = self._image_objects(pool, prefix)
        return [{'Pool': pool, 'Image': image, 'Prefix': prefix, 'Objects': len(objects)}]

    @contextmanager
    def _offline_osdmap(self):
        """Dump the current osdmap into a scratch directory removed on exit."""
        with tempfile.TemporaryDirectory(prefix='ceph-query-') as workdir:
            path = os.path.join(workdir, 'osdmap')
            self.context.run(self.context.ceph('osd', 'getmap', '-o', path))
            yield path

    def _object_mapping(self, pool, obj):
        return self._ceph_json('osd', 'map', pool, obj)

    def _primary_osds(self, pool, objects):
        primaries = set()

        if self.context.mapper == 'osdmaptool':
            with self._offline_osdmap() as osdmap:
                pool_id = self.pool_id(pool)
                for obj in objects:
                    output = self.context.run(self.context.osdmaptool(
                        osdmap, '--test-map-object', obj, '--pool', str(pool_id)), silent=True)
                    _, osds = parse_osdmaptool_mapping(output)
                    if osds:
                        primaries.add(osds[0])
            return primaries

        for obj in objects:
            mapping = self._object_mapping(pool, obj)
            primary = mapping.get('acting_primary')
            if primary is None or primary < 0:
                acting = mapping.get('acting') or []
                primary = acting[0] if acting else None
            if primary is not None:
                primaries.add(primary)
        return primaries

    def _image_primary_osds(self, pool, image):
        self._require_image(pool, image)
        prefix = self._prefix(pool, image)
        objects = self._image_objects(pool, prefix)
        primaries = {osd for osd in self._primary_osds(pool, objects)
                     if osd >= 0 and osd != OSD_NONE}
        debug_print(f"{pool}/{image}: {len(objects)} objects on {len(primaries)} primary OSDs")
        return primaries

    def image_osds(self, pool, image):
        primaries = self._image_primary_osds(pool, image)
        return [osd_name(osd_id) for osd_id in sorted(primaries)]

    def image_hosts(self, pool, image):
        primaries = self._image_primary_osds(pool, image)
        host_of = self.osd_hosts(self.get_osd_tree())
        hosts = set()
        for osd_id in primaries:
            hosts.add(host_of[osd_id] if osd_id in host_of else self.locate_osd(osd_id))
        return sorted(hosts, key=natural_sort_key)

    def _image_used_bytes(self, pool, image):
        extents = self._rbd_json('diff', f"{pool}/{image}")
        return sum(extent.get('length', 0) for extent in extents or [])

    def image_size(self, pool, image):
        self._require_image(pool, image)
        used = self._image_used_bytes(pool, image)
        return [{'Pool': pool, 'Image': image, 'Used MB': f"{bytes_to_mb(used):.2f}"}]

    def all_images_size(self, pool):
        sizes = [(image, self._image_used_bytes(pool, image)) for image in self.list_images(pool)]
        sizes.sort(key=lambda item: (-item[1], item[0]))
        return [{'Pool': pool, 'Image': image, 'Used MB': f"{bytes_to_mb(used):.2f}"}
                for image, used in sizes]

    # ---- objects ------------------------------------------------------------

    def object_pg(self, pool, obj):
        mapping = self._object_mapping(pool, obj)
        return [{'Pool': pool, 'Object': obj, 'PG': mapping['pgid']}]

    def object_hosts(self, pool, obj):
        pgid = self._object_mapping(pool, obj)['pgid']
        rows = []
        for row in self.hosts_for_pg(pgid):
            combined = {'Object': obj}
            combined.update(row)
            rows.append(combined)
        return rows


# Standalone test
if __name__ == "__main__":
    DEBUG = True

    print("Testing Ceph Query Core Module (Pure Python)")
    print("=" * 80)

    try:
        context = CephContext.from_environment()
        check_dependencies(context)
        status = check_connectivity(context)
    except CephQueryError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(e.exit_code)

    query = CephQuery(context)
    print(f"Cluster: {status['fsid']}")
    print(f"Hosts: {len(query.list_hosts())}")
    print(f"Pools: {', '.join(query.list_pools()) or 'none'}")
