import os

import pytest

from ceph_query_core import CephContext, CommandError


HOSTS = {
    'node-a': [0, 2, 10],
    'node-b': [1, 3],
}


def osd_tree():
    nodes = [{'id': -1, 'name': 'default', 'type': 'root', 'children': [-3, -2]}]
    nodes.append({'id': -2, 'name': 'node-a', 'type': 'host', 'children': [10, 2, 0]})
    nodes.append({'id': -3, 'name': 'node-b', 'type': 'host', 'children': [3, 1]})
    for host, osds in HOSTS.items():
        for osd_id in osds:
            nodes.append({'id': osd_id, 'name': f'osd.{osd_id}', 'type': 'osd',
                          'status': 'up', 'reweight': 1.0})
    return {'nodes': nodes, 'stray': []}


def osd_df():
    gb = 1024 * 1024
    used = {0: 10 * gb, 1: 40 * gb, 2: 5 * gb, 3: 40 * gb, 10: 1 * gb}
    return {
        'nodes': [
            {'id': osd_id, 'name': f'osd.{osd_id}', 'type': 'osd',
             'kb': 100 * gb, 'kb_used': used[osd_id], 'kb_avail': 100 * gb - used[osd_id]}
            for osd_id in (0, 1, 2, 3, 10)
        ],
        'stray': [],
        'summary': {},
    }


def osd_find(osd_id):
    host = next(name for name, osds in HOSTS.items() if osd_id in osds)
    return {'osd': osd_id, 'host': host, 'crush_location': {'host': host, 'root': 'default'}}


def pg(pgid, acting, num_read=0, num_read_kb=0, num_write=0, num_write_kb=0):
    return {
        'pgid': pgid,
        'state': 'active+clean',
        'up': list(acting),
        'acting': list(acting),
        'up_primary': acting[0],
        'acting_primary': acting[0],
        'stat_sum': {'num_read': num_read, 'num_read_kb': num_read_kb,
                     'num_write': num_write, 'num_write_kb': num_write_kb},
    }


def pg_dump():
    return {
        'pg_ready': True,
        'pg_stats': [
            pg('1.0', [0, 1, 2], num_read=5, num_read_kb=50, num_write=100, num_write_kb=900),
            pg('1.1f', [3, 10, 2], num_read=70, num_read_kb=10, num_write=3, num_write_kb=30),
            pg('1.a', [1, 2, 0], num_read=70, num_read_kb=700, num_write=3, num_write_kb=2000),
            pg('2.0', [10, 3, 0], num_read=1, num_read_kb=1, num_write=100, num_write_kb=1),
        ],
    }


def pg_dump_brief():
    stats = pg_dump()['pg_stats']
    return [{key: record[key] for key in ('pgid', 'state', 'up', 'up_primary', 'acting', 'acting_primary')}
            for record in stats]


class FakeContext(CephContext):
    """Serves canned output per argv instead of running anything."""

    def __init__(self, responses=None, object_maps=None, **kwargs):
        super().__init__(**kwargs)
        self.responses = dict(responses or {})
        self.object_maps = dict(object_maps or {})
        self.calls = []
        self.osdmap_paths = []

    def ceph(self, *args):
        return ('ceph',) + args

    def rados(self, *args):
        return ('rados',) + args

    def rbd(self, *args):
        return ('rbd',) + args

    def osdmaptool(self, *args):
        return ('osdmaptool',) + args

    def run(self, command, is_json=False, silent=False):
        command = tuple(command)
        self.calls.append(command)

        if command[:4] == ('ceph', 'osd', 'getmap', '-o'):
            self.osdmap_paths.append(command[4])
            with open(command[4], 'wb') as f:
                f.write(b'osdmap')
            return ''

        if command[0] == 'osdmaptool':
            assert os.path.exists(command[1])
            obj = command[command.index('--test-map-object') + 1]
            response = self.object_maps[obj]
        elif command in self.responses:
            response = self.responses[command]
        else:
            raise CommandError(f"unexpected command: {' '.join(command)}", command=list(command))

        if isinstance(response, Exception):
            raise response
        return response

    def called(self, *prefix):
        return [call for call in self.calls if call[:len(prefix)] == prefix]


def json_cmd(*args):
    return args + ('--format', 'json')


def cluster_responses():
    responses = {
        json_cmd('ceph', 'status'): {'fsid': '8d2a5c4e-0000-4000-8000-000000000000', 'health': {}},
        json_cmd('ceph', 'osd', 'tree'): osd_tree(),
        json_cmd('ceph', 'osd', 'df'): osd_df(),
        json_cmd('ceph', 'pg', 'dump', 'pgs'): pg_dump(),
        json_cmd('ceph', 'pg', 'dump', 'pgs_brief'): pg_dump_brief(),
        json_cmd('ceph', 'osd', 'lspools'): [{'poolnum': 2, 'poolname': 'volumes'},
                                             {'poolnum': 1, 'poolname': 'rbd'}],
        json_cmd('ceph', 'pg', 'map', '1.1f'): {'epoch': 42, 'raw_pgid': '1.1f', 'pgid': '1.1f',
                                                'up': [3, 10, 2], 'acting': [3, 10, 2]},
        json_cmd('ceph', 'osd', 'map', 'rbd', 'greeting'): {
            'epoch': 42, 'pool': 'rbd', 'pool_id': 1, 'objname': 'greeting',
            'raw_pgid': '1.e0a6c5f', 'pgid': '1.1f',
            'up': [3, 10, 2], 'up_primary': 3, 'acting': [3, 10, 2], 'acting_primary': 3},
        json_cmd('rbd', 'ls', 'rbd'): ['vm-disk-1', 'empty', 'vm-disk-2'],
        json_cmd('rbd', 'info', 'rbd/vm-disk-1'): {'name': 'vm-disk-1', 'block_name_prefix': 'rbd_data.1a2b',
                                                   'format': 2, 'size': 1073741824},
        json_cmd('rbd', 'diff', 'rbd/vm-disk-1'): [{'offset': 0, 'length': 4194304, 'exists': 'true'},
                                                   {'offset': 8388608, 'length': 2097152, 'exists': 'true'}],
        json_cmd('rbd', 'diff', 'rbd/empty'): [],
        json_cmd('rbd', 'diff', 'rbd/vm-disk-2'): [{'offset': 0, 'length': 1048576, 'exists': 'true'}],
        ('rados', '--pool', 'rbd', 'ls'): "\n".join([
            'rbd_data.1a2b.0000000000000000',
            'rbd_data.1a2b.0000000000000002',
            'rbd_data.1a2bc.0000000000000000',
            'rbd_header.1a2b',
            'rbd_data.1a2b.0000000000000001',
        ]),
    }
    for osds in HOSTS.values():
        for osd_id in osds:
            responses[json_cmd('ceph', 'osd', 'find', str(osd_id))] = osd_find(osd_id)

    primaries = {'0000000000000000': [3, 10, 2], '0000000000000001': [0, 1, 2], '0000000000000002': [2, 3, 0]}
    for suffix, acting in primaries.items():
        obj = f'rbd_data.1a2b.{suffix}'
        responses[json_cmd('ceph', 'osd', 'map', 'rbd', obj)] = {
            'pgid': '1.0', 'up': acting, 'up_primary': acting[0], 'acting': acting, 'acting_primary': acting[0]}
    return responses


@pytest.fixture
def context():
    return FakeContext(cluster_responses())


@pytest.fixture
def offline_context():
    object_maps = {
        'rbd_data.1a2b.0000000000000000': "osdmaptool: osdmap file '/tmp/osdmap'\n"
                                          " object 'rbd_data.1a2b.0000000000000000' -> 1.4 -> [3,10,2]\n",
        'rbd_data.1a2b.0000000000000001': " object 'rbd_data.1a2b.0000000000000001' -> 1.1 -> [0,1,2]\n",
        'rbd_data.1a2b.0000000000000002': " object 'rbd_data.1a2b.0000000000000002' -> 1.9 -> [2,3,0]\n",
    }
    return FakeContext(cluster_responses(), object_maps=object_maps, mapper='osdmaptool')
