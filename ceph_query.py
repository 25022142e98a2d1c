#!/usr/bin/env python3
"""
Ceph Query Tool - Plain Text Frontend

Uses the pure Python ceph_query_core module for data collection.
No external dependencies required.

Usage:
    ceph-query [-d] <command> [arg1] [arg2]
    ceph-query -h

Connection settings come from the environment:
    CEPH_QUERY_CONF, CEPH_QUERY_KEYRING, CEPH_QUERY_USER, CEPH_QUERY_CLUSTER,
    CEPH_QUERY_TIMEOUT, CEPH_QUERY_MAPPER (osd-map|osdmaptool), CEPH_QUERY_SUDO
"""

import sys
import argparse
import json

import ceph_query_core
from ceph_query_core import (
    VERSION, CephContext, CephQuery, CephQueryError, UsageError,
    check_dependencies, check_connectivity,
)

# name -> (CephQuery method, argument names, fixed keyword arguments, help)
COMMANDS = {
    'list-hosts': ('list_hosts', (), {}, "List every host in the CRUSH tree"),
    'host-osds': ('osds_for_host', ('host',), {}, "List the OSDs under a host"),
    'host-usage': ('host_usage', ('host',), {}, "Used/available/total space of a host"),
    'hosts-usage': ('all_hosts_usage', (), {}, "Used/available/total space of every host"),

    'pg-hosts': ('hosts_for_pg', ('pgid',), {}, "Hosts of a PG's acting set, primary first"),
    'pg-most-write-ops': ('pg_extreme', (), {'metric': 'write-ops', 'most': True}, "PG with the most write operations"),
    'pg-least-write-ops': ('pg_extreme', (), {'metric': 'write-ops', 'most': False}, "PG with the fewest write operations"),
    'pg-most-write-kb': ('pg_extreme', (), {'metric': 'write-kb', 'most': True}, "PG with the most KB written"),
    'pg-least-write-kb': ('pg_extreme', (), {'metric': 'write-kb', 'most': False}, "PG with the fewest KB written"),
    'pg-most-read-ops': ('pg_extreme', (), {'metric': 'read-ops', 'most': True}, "PG with the most read operations"),
    'pg-least-read-ops': ('pg_extreme', (), {'metric': 'read-ops', 'most': False}, "PG with the fewest read operations"),
    'pg-most-read-kb': ('pg_extreme', (), {'metric': 'read-kb', 'most': True}, "PG with the most KB read"),
    'pg-least-read-kb': ('pg_extreme', (), {'metric': 'read-kb', 'most': False}, "PG with the fewest KB read"),

    'list-pools': ('list_pools', (), {}, "List pools"),
    'list-images': ('list_images', ('pool',), {}, "List the RBD images of a pool"),
    'image-prefix': ('image_prefix', ('pool', 'image'), {}, "Backing-object prefix of an image"),
    'image-objects-count': ('image_object_count', ('pool', 'image'), {}, "Number of objects backing an image"),
    'image-osds': ('image_osds', ('pool', 'image'), {}, "Primary OSDs holding an image's objects"),
    'image-hosts': ('image_hosts', ('pool', 'image'), {}, "Hosts holding an image's objects"),
    'image-size': ('image_size', ('pool', 'image'), {}, "Space actually written in an image"),
    'images-size': ('all_images_size', ('pool',), {}, "Written space of every image in a pool, largest first"),

    'osd-most-used': ('osd_extreme', (), {'most': True}, "OSD with the most used space"),
    'osd-least-used': ('osd_extreme', (), {'most': False}, "OSD with the least used space"),
    'osd-host': ('host_for_osd', ('osd',), {}, "Host of an OSD"),
    'osd-pgs': ('pgs_for_osd', ('osd',), {}, "PGs whose acting set contains an OSD"),
    'osd-primary-pgs': ('pgs_for_osd', ('osd',), {'primary_only': True}, "PGs for which an OSD is primary"),

    'object-pg': ('object_pg', ('pool', 'object'), {}, "PG an object maps to"),
    'object-hosts': ('object_hosts', ('pool', 'object'), {}, "PG and hosts an object maps to"),
}

GROUPS = [
    ('Hosts', ['list-hosts', 'host-osds', 'host-usage', 'hosts-usage']),
    ('Placement groups', ['pg-hosts', 'pg-most-write-ops', 'pg-least-write-ops',
                          'pg-most-write-kb', 'pg-least-write-kb', 'pg-most-read-ops',
                          'pg-least-read-ops', 'pg-most-read-kb', 'pg-least-read-kb']),
    ('Pools and images', ['list-pools', 'list-images', 'image-prefix', 'image-objects-count',
                          'image-osds', 'image-hosts', 'image-size', 'images-size']),
    ('OSDs', ['osd-most-used', 'osd-least-used', 'osd-host', 'osd-pgs', 'osd-primary-pgs']),
    ('Objects', ['object-pg', 'object-hosts']),
]


class QueryArgumentParser(argparse.ArgumentParser):
    """argparse exits with 2 on bad input; this tool promises 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"ERROR: {message}", file=sys.stderr)
        sys.exit(1)


def commands_help():
    lines = ["COMMANDS:"]
    for title, names in GROUPS:
        lines.append(f"  {title}:")
        for name in names:
            _, arg_names, _, description = COMMANDS[name]
            signature = " ".join([name] + [f"<{arg}>" for arg in arg_names])
            lines.append(f"    {signature:<38} {description}")
    return "\n".join(lines)


def build_parser(prog='ceph-query', description='Ceph Query Tool - Plain Text Frontend'):
    parser = QueryArgumentParser(
        prog=prog,
        description=description,
        epilog=commands_help(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-d', '--debug', action='store_true',
                        help='Print diagnostic lines on stderr')
    parser.add_argument('--version', action='version', version=f'%(prog)s {VERSION}')
    parser.add_argument('command', nargs='?',
                        help='Command to run (see COMMANDS below)')
    parser.add_argument('args', nargs=argparse.REMAINDER, metavar='arg',
                        help='Command arguments')
    return parser


def validate_command(command, args):
    """
    Resolve a command name and check its argument count.

    Returns (method name, positional args, keyword args). Raises UsageError
    before anything touches the cluster.
    """
    if not command:
        raise UsageError("no command given")
    if command not in COMMANDS:
        raise UsageError(f"unknown command: {command}")

    method, arg_names, kwargs, _ = COMMANDS[command]
    if len(args) != len(arg_names):
        expected = " ".join(f"<{arg}>" for arg in arg_names) or "no arguments"
        raise UsageError(f"{command} takes {expected}, got {len(args)} argument(s)")
    return method, list(args), dict(kwargs)


def execute(command, args, context=None):
    """Validate, check dependencies and connectivity, then run one command."""
    method, call_args, kwargs = validate_command(command, args)

    if context is None:
        context = CephContext.from_environment()
    check_dependencies(context)
    check_connectivity(context)

    query = CephQuery(context)
    ceph_query_core.debug_print(f"{command}: {method}({', '.join(call_args)})")
    return getattr(query, method)(*call_args, **kwargs)


def format_row(row):
    """Labeled rows become 'Key:value | Key:value', raw values one JSON scalar."""
    if isinstance(row, dict):
        return " | ".join(f"{key}:{value}" for key, value in row.items())
    return json.dumps(row)


def main(argv=None):
    parser = build_parser()
    options = parser.parse_args(argv)
    ceph_query_core.DEBUG = options.debug

    try:
        rows = execute(options.command, options.args)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code
    except CephQueryError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return e.exit_code

    for row in rows:
        print(format_row(row))
    return 0


if __name__ == "__main__":
    sys.exit(main())
