"""
Tests for parameter coercion and the dispatcher's outcome mapping.
"""
import math

import pytest
from fastapi.testclient import TestClient

from config_service import Settings
from dispatch_service import coerce_param
from http_errors import Conflict, NotFound, created, from_code, ok
from log_service import LogStore
from main import create_app
from route_service import HandlerDefinition

API_TOKEN = 'dispatch-token'


class TestCoercion:
    """Permissive coercion of raw path values."""

    def test_string_is_unchanged(self):
        assert coerce_param('abc', 'string') == 'abc'

    def test_integer(self):
        assert coerce_param('42', 'number') == 42

    def test_float(self):
        assert coerce_param('2.5', 'number') == 2.5

    def test_non_numeric_is_nan_not_error(self):
        value = coerce_param('abc', 'number')
        assert isinstance(value, float) and math.isnan(value)

    def test_hex_and_exponent(self):
        assert coerce_param('0x1A', 'number') == 26
        assert coerce_param('1e3', 'number') == 1000.0
        assert coerce_param('-.5', 'number') == -0.5

    def test_python_only_literals_are_nan(self):
        for raw in ('1_000', 'inf', 'nan', '0b101'):
            assert math.isnan(coerce_param(raw, 'number'))

    def test_boolean_is_truthy(self):
        assert coerce_param('true', 'boolean') is True
        assert coerce_param('false', 'boolean') is True
        assert coerce_param('0', 'boolean') is True
        assert coerce_param('', 'boolean') is False


def echo_params(ctx):
    return ok({name: {'value': p.value, 'type': p.declared_type} for name, p in ctx.params.items()})


def echo_body(ctx):
    return created({'body': ctx.body})


def raises_not_found(ctx):
    raise NotFound('nothing here', {'hint': 'look elsewhere'})


def returns_conflict(ctx):
    return Conflict('already exists')


def raises_unclassified(ctx):
    raise RuntimeError('boom')


def returns_nothing(ctx):
    return {'raw': 'dict'}


async def async_handler(ctx):
    return ok({'async': True, 'id': ctx.param('id')})


def passthrough(ctx):
    return from_code(418, 'engine says teapot')


TREE = {
    'items': {
        '[id:number]': {
            'index.py': HandlerDefinition(handler=echo_params),
            'flags': {'[on:boolean]': HandlerDefinition(handler=echo_params)},
        },
        'latest.py': HandlerDefinition(handler=async_handler, url='/items/latest/:id'),
    },
    'body.py': HandlerDefinition(method='POST', handler=echo_body),
    'missing.py': HandlerDefinition(handler=raises_not_found),
    'conflict.py': HandlerDefinition(handler=returns_conflict),
    'crash.py': HandlerDefinition(handler=raises_unclassified),
    'nothing.py': HandlerDefinition(handler=returns_nothing),
    'teapot.py': HandlerDefinition(handler=passthrough),
    'stub.py': HandlerDefinition(),
}


@pytest.fixture
def make_client(redis_client):
    def factory(environment='test'):
        settings = Settings(environment=environment, api_token=API_TOKEN)
        app = create_app(settings, manifest=TREE, log_store=LogStore(client=redis_client))
        return TestClient(app, headers={'Authorization': f'Bearer {API_TOKEN}'})
    return factory


class TestDispatch:
    """Outcome mapping onto the wire envelopes."""

    def test_number_param_bound(self, make_client):
        response = make_client().get('/items/7')
        assert response.status_code == 200
        assert response.json() == {'success': True, 'data': {'id': {'value': 7, 'type': 'number'}}}

    def test_boolean_param_bound(self, make_client):
        response = make_client().get('/items/3/flags/false')
        data = response.json()['data']
        assert data['on'] == {'value': True, 'type': 'boolean'}
        assert data['id']['value'] == 3

    def test_async_handler(self, make_client):
        response = make_client().get('/items/latest/abc')
        assert response.json() == {'success': True, 'data': {'async': True, 'id': 'abc'}}

    def test_declared_success_status(self, make_client):
        response = make_client().post('/body', json={'a': 1})
        assert response.status_code == 201
        assert response.json() == {'success': True, 'data': {'body': {'a': 1}}}

    def test_empty_body_is_empty_dict(self, make_client):
        response = make_client().post('/body')
        assert response.json()['data'] == {'body': {}}

    def test_invalid_json_body(self, make_client):
        response = make_client().post('/body', content=b'{not json', headers={'Content-Type': 'application/json'})
        assert response.status_code == 400
        assert response.json()['error'] == 'BadRequest'

    def test_raised_error(self, make_client):
        response = make_client().get('/missing')
        assert response.status_code == 404
        assert response.json() == {
            'success': False,
            'error': 'NotFound',
            'message': 'nothing here',
            'details': {'hint': 'look elsewhere'},
        }

    def test_returned_error(self, make_client):
        response = make_client().get('/conflict')
        assert response.status_code == 409
        body = response.json()
        assert body['error'] == 'Conflict'
        assert 'details' not in body

    def test_passthrough_status(self, make_client):
        response = make_client().get('/teapot')
        assert response.status_code == 418
        assert response.json()['message'] == 'engine says teapot'

    def test_unclassified_exception_is_shaped(self, make_client):
        response = make_client().get('/crash')
        assert response.status_code == 500
        body = response.json()
        assert body['success'] is False
        assert body['error'] == 'InternalServerError'
        assert body['message'] == 'boom'
        assert body['details']['exception'] == 'RuntimeError'

    def test_production_hides_diagnostics(self, make_client):
        body = make_client('production').get('/crash').json()
        assert 'details' not in body

    def test_handler_without_outcome(self, make_client):
        response = make_client().get('/nothing')
        assert response.status_code == 500
        assert response.json()['error'] == 'InternalServerError'

    def test_stub_handler(self, make_client):
        response = make_client().get('/stub')
        assert response.status_code == 200
        assert response.json()['data'] == {'message': 'You have not yet set up this route.'}

    def test_unknown_route_uses_envelope(self, make_client):
        response = make_client().get('/does/not/exist')
        assert response.status_code == 404
        assert response.json()['success'] is False
        assert response.json()['error'] == 'NotFound'

    def test_wrong_method_uses_envelope(self, make_client):
        response = make_client().delete('/missing')
        assert response.status_code == 405
        assert response.json()['success'] is False
