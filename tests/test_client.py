import json
from datetime import date

import pytest
import requests

from nowly.client import TaskListClient
from nowly.position import min_position

DAY = date(2025, 4, 7)


def make_response(status_code: int, payload) -> requests.Response:
    r = requests.Response()
    r.status_code = status_code
    r._content = json.dumps(payload).encode('utf-8')
    r.url = 'http://test'
    return r


def day_payload(keys):
    return {'tasks': [
        {'id': i + 1, 'title': f't{i + 1}', 'position': k, 'scheduled_date': DAY.isoformat()}
        for i, k in enumerate(keys)
    ]}


@pytest.fixture
def loaded(monkeypatch):
    def _load(keys):
        c = TaskListClient('http://test')
        monkeypatch.setattr(c.session, 'get', lambda *a, **kw: make_response(200, day_payload(keys)))
        c.load_day(DAY)
        return c
    return _load


def test_load_day_builds_local_order(loaded):
    c = loaded(['0|00000g:', '0|000008:', '0|00000o:'])
    assert c.ordered_ids() == [2, 1, 3]


def test_move_confirmed_keeps_new_order(loaded, monkeypatch):
    c = loaded(['0|000008:', '0|00000g:', '0|00000o:'])
    sent = {}

    def fake_patch(url, json=None, **kw):
        sent['url'] = url
        sent['json'] = json
        return make_response(200, {'id': 3, 'position': json['position']})

    monkeypatch.setattr(c.session, 'patch', fake_patch)
    assert c.move(3, 0) is True
    assert c.ordered_ids() == [3, 1, 2]
    assert sent['url'].endswith('/tasks/3/position')
    assert sent['json']['position'] == c.positions[3]
    assert c.tasks[3]['position'] == c.positions[3]


def test_failed_confirmation_restores_snapshot(loaded, monkeypatch):
    keys = ['0|000008:', '0|00000g:', '0|00000o:']
    c = loaded(keys)
    before = dict(c.positions)
    monkeypatch.setattr(c.session, 'patch', lambda *a, **kw: make_response(500, {'detail': 'storage error'}))
    assert c.move(3, 0) is False
    assert c.positions == before
    assert c.ordered_ids() == [1, 2, 3]
    assert [c.tasks[i]['position'] for i in (1, 2, 3)] == keys


def test_network_error_restores_snapshot(loaded, monkeypatch):
    c = loaded(['0|000008:', '0|00000g:'])
    before = dict(c.positions)

    def boom(*a, **kw):
        raise requests.ConnectionError('offline')

    monkeypatch.setattr(c.session, 'patch', boom)
    assert c.move(1, 1) is False
    assert c.positions == before


def test_rebalance_path_posts_full_order(loaded, monkeypatch):
    c = loaded([min_position(), '0|000008:', '0|00000g:'])
    sent = {}

    def fake_post(url, json=None, **kw):
        sent['url'] = url
        sent['json'] = json
        return make_response(200, {'ok': True, 'positions': [
            {'task_id': tid, 'position': c.positions[tid]} for tid in json['task_ids']]})

    monkeypatch.setattr(c.session, 'post', fake_post)
    assert c.move(3, 0) is True
    assert sent['url'].endswith('/tasks/rebalance')
    assert sent['json'] == {'task_ids': [3, 1, 2]}
    assert c.ordered_ids() == [3, 1, 2]


def test_failed_rebalance_restores_every_position(loaded, monkeypatch):
    c = loaded([min_position(), '0|000008:', '0|00000g:'])
    before = dict(c.positions)
    monkeypatch.setattr(c.session, 'post', lambda *a, **kw: make_response(404, {'detail': 'nope'}))
    assert c.move(3, 0) is False
    assert c.positions == before


def test_move_to_same_place_sends_nothing(loaded, monkeypatch):
    c = loaded(['0|000008:', '0|00000g:'])

    def fail(*a, **kw):
        raise AssertionError('no request expected')

    monkeypatch.setattr(c.session, 'patch', fail)
    assert c.move(2, 1) is True
