"""
Pytest configuration and fixtures for the daemon tests.

Docker is replaced by FakeEngine, which keeps a tiny in-memory filesystem per
container and answers the exec commands the daemon issues (ls, cat, touch, rm,
the printf writer and console commands) the way coreutils would. Redis is
replaced by FakeRedis, a dict of lists.
"""
import os
import posixpath
import sys
from types import SimpleNamespace

import pytest
from docker.errors import APIError, NotFound

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import docker_service
from config_service import Settings
from log_service import LogStore
from main import create_app

API_TOKEN = 'test-token'


def engine_error(status, explanation, cls=APIError):
    response = SimpleNamespace(status_code=status, reason=explanation, url='http://docker/test')
    return cls(explanation, response=response, explanation=explanation)


class FakeRedis:
    def __init__(self):
        self.lists = {}

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        self.lists[key] = items[start:end + 1] if end != -1 else items[start:]

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:end + 1] if end != -1 else items[start:]


class FakeContainer:
    def __init__(self, engine, cid, name, env=None, port='25565', running=False):
        self.engine = engine
        self.id = cid
        self.name = name
        self.env = env or ['VERSION=1.20.1', 'TYPE=paper', 'MEMORY=2G']
        self.port = port
        self.running = running
        self.removed = False
        self.files = {'/data': None}
        self.log_chunks = []

    def start(self):
        self.running = True

    def stop(self):
        self.running = False

    def restart(self):
        self.running = True

    def remove(self):
        if self.running:
            raise engine_error(409, 'cannot remove a running container')
        self.removed = True
        del self.engine.containers_by_id[self.id]

    def logs(self, **kwargs):
        self.engine.log_calls.append(kwargs)
        return FakeLogStream(self.log_chunks)

    def inspect(self):
        return {
            'Id': self.id,
            'Name': '/' + self.name,
            'Created': '2024-01-01T00:00:00Z',
            'Config': {'Env': self.env},
            'HostConfig': {'PortBindings': {'25565/tcp': [{'HostPort': self.port}]}},
            'State': {
                'Status': 'running' if self.running else 'exited',
                'Running': self.running,
                'StartedAt': '2024-01-01T00:00:01Z',
                'FinishedAt': '0001-01-01T00:00:00Z',
                'Error': '',
            },
            'NetworkSettings': {'IPAddress': '172.17.0.2', 'Ports': {}},
        }


class FakeLogStream:
    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.closed = False

    def __iter__(self):
        return iter(self.chunks)

    def close(self):
        self.closed = True


class FakeAPI:
    def __init__(self, engine):
        self.engine = engine
        self._execs = {}

    def _get(self, cid):
        c = self.engine.containers_by_id.get(cid)
        if c is None:
            raise engine_error(404, f'No such container: {cid}', NotFound)
        return c

    def containers(self, all=False, filters=None):
        out = []
        for c in self.engine.containers_by_id.values():
            out.append({
                'Id': c.id,
                'Names': ['/' + c.name],
                'State': 'running' if c.running else 'exited',
                'Created': 1700000000,
                'Image': 'itzg/minecraft-server:java17',
                'Ports': [],
                'Labels': {docker_service.SERVER_LABEL: 'true'},
            })
        return out

    def inspect_container(self, cid):
        return self._get(cid).inspect()

    def stats(self, cid, stream=True, one_shot=None):
        self._get(cid)
        return {
            'memory_stats': {'usage': 1024},
            'cpu_stats': {'cpu_usage': {'total_usage': 200}, 'system_cpu_usage': 2000, 'online_cpus': 2},
            'precpu_stats': {'cpu_usage': {'total_usage': 100}, 'system_cpu_usage': 1000},
        }

    def exec_create(self, cid, cmd, **kwargs):
        container = self._get(cid)
        if not container.running:
            raise engine_error(409, f'Container {cid} is not running')
        exec_id = f'exec-{len(self._execs)}'
        self.engine.commands.append(list(cmd))
        code, output = self.engine.run(container, list(cmd))
        self._execs[exec_id] = (code, output)
        return {'Id': exec_id}

    def exec_start(self, exec_id, stream=False, **kwargs):
        code, output = self._execs[exec_id]
        data = output.encode('utf-8') if isinstance(output, str) else output
        # deliver in small chunks to exercise aggregation
        return iter([data[i:i + 7] for i in range(0, len(data), 7)])

    def exec_inspect(self, exec_id):
        code, _ = self._execs[exec_id]
        return {'ExitCode': code, 'Running': False}


class FakeContainers:
    def __init__(self, engine):
        self.engine = engine

    def get(self, cid):
        return self.engine.api._get(cid)

    def create(self, image, name=None, labels=None, environment=None, ports=None, volumes=None, **kwargs):
        cid = f'c{len(self.engine.containers_by_id) + 1:063d}'
        host_port = str(list((ports or {}).values())[0]) if ports else '25565'
        c = FakeContainer(self.engine, cid, name, env=environment, port=host_port)
        self.engine.containers_by_id[cid] = c
        self.engine.created.append({'image': image, 'name': name, 'labels': labels,
                                    'environment': environment, 'ports': ports, 'volumes': volumes,
                                    'nano_cpus': kwargs.get('nano_cpus')})
        return c


class FakeImages:
    def __init__(self, engine):
        self.engine = engine

    def pull(self, repo, tag=None):
        self.engine.pulled.append(f'{repo}:{tag}')
        if self.engine.pull_fails:
            raise engine_error(500, 'registry unavailable')
        return SimpleNamespace(id='sha256:abc', tags=[f'{repo}:{tag}'])


class FakeEngine:
    def __init__(self):
        self.containers_by_id = {}
        self.commands = []
        self.created = []
        self.pulled = []
        self.log_calls = []
        self.pull_fails = False
        self.console = lambda command: f'\x1b[0;33mExecuted: {command}\x1b[0m\n'
        self.api = FakeAPI(self)
        self.containers = FakeContainers(self)
        self.images = FakeImages(self)

    def add_container(self, cid='srv1', name='mc-survival', running=True, **kwargs):
        c = FakeContainer(self, cid, name, running=running, **kwargs)
        self.containers_by_id[cid] = c
        return c

    # a few coreutils, enough for the daemon's file operations
    def run(self, container, cmd):
        fs = container.files
        if cmd[:3] == ['ls', '-a', '-p']:
            path = cmd[3].rstrip('/') or '/'
            if path not in fs:
                return 2, f"ls: cannot access '{cmd[3]}': No such file or directory\n"
            if fs[path] is not None:
                return 0, cmd[3] + '\n'
            names = ['./', '../']
            for p, content in fs.items():
                if posixpath.dirname(p) == path and p != path:
                    names.append(posixpath.basename(p) + ('/' if content is None else ''))
            return 0, '\n'.join(names) + '\n'
        if cmd[0] == 'cat':
            path = cmd[1].rstrip('/')
            if path not in fs:
                return 1, f'cat: {cmd[1]}: No such file or directory\n'
            if fs[path] is None:
                return 1, f'cat: {cmd[1]}: Is a directory\n'
            return 0, fs[path]
        if cmd[0] == 'touch':
            path = cmd[1].rstrip('/')
            if posixpath.dirname(path) not in fs:
                return 1, f"touch: cannot touch '{cmd[1]}': No such file or directory\n"
            fs.setdefault(path, '')
            return 0, ''
        if cmd[0] == 'rm':
            path = cmd[1].rstrip('/')
            if path not in fs:
                return 1, f"rm: cannot remove '{cmd[1]}': No such file or directory\n"
            if fs[path] is None:
                return 1, f"rm: cannot remove '{cmd[1]}': Is a directory\n"
            del fs[path]
            return 0, ''
        if cmd[:2] == ['sh', '-c']:
            content, path = cmd[4], cmd[5].rstrip('/')
            if posixpath.dirname(path) not in fs:
                return 2, f'sh: 1: cannot create {cmd[5]}: No such file or directory\n'
            fs[path] = content
            return 0, ''
        if '/bin/bash' in cmd:
            script = cmd[cmd.index('/bin/bash') + 2]
            return 0, self.console(script)
        return 127, f'{cmd[0]}: command not found\n'


@pytest.fixture
def engine(monkeypatch):
    fake = FakeEngine()
    monkeypatch.setattr(docker_service, 'get_client', lambda: fake)
    return fake


@pytest.fixture
def container(engine):
    c = engine.add_container()
    c.files.update({
        '/data/world': None,
        '/data/logs': None,
        '/data/server.properties': 'motd=Hello\nmax-players=20\n',
        '/data/Banned-players.json': '[]',
        '/data/eula.txt': 'eula=true\n',
    })
    return c


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment='test',
        api_token=API_TOKEN,
        server_data_path=str(tmp_path / 'servers'),
    )


@pytest.fixture
def app(settings, engine, redis_client):
    return create_app(settings, log_store=LogStore(client=redis_client, limit=settings.log_limit))


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    return TestClient(app, headers={'Authorization': f'Bearer {API_TOKEN}'})


@pytest.fixture
def anon_client(app):
    from fastapi.testclient import TestClient
    return TestClient(app)
