"""Tests for the HTTP action endpoints."""
import json
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from simagent import server
from simagent.server import app

from fakes import FakeSimulator


@pytest.fixture
def sim(monkeypatch, tmp_path):
    """Fake simulator behind every request."""
    fake = FakeSimulator()
    monkeypatch.setenv("SIMAGENT_ARTIFACTS_DIR", str(tmp_path / "art"))
    monkeypatch.setattr(time, "sleep", lambda s: None)
    monkeypatch.setattr(server, "_device_for", lambda body: fake)
    return fake


@pytest.fixture
def client():
    """Create a test client."""
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client


def test_health_endpoint(client):
    """Test health check endpoint."""
    response = client.get('/health')
    assert response.status_code == 200
    data = json.loads(response.data)
    assert data['status'] == 'ok'


def test_tap_by_label(client, sim):
    """Tap resolves a selector against the live tree."""
    response = client.post('/ui/tap', json={'selectors': {'label': 'Next'}})
    assert response.status_code == 200
    data = json.loads(response.data)
    assert data['ok'] is True
    assert data['elementId'] == 'next'


def test_tap_two_selectors(client, sim):
    """Two selectors are a bad request."""
    response = client.post('/ui/tap', json={'selectors': {'index': 1, 'label': 'Next'}})
    assert response.status_code == 400
    data = json.loads(response.data)
    assert data['error']['code'] == 'USAGE'


def test_tap_unknown_label(client, sim):
    """A missing element is a 404."""
    response = client.post('/ui/tap', json={'selectors': {'label': 'Profile'}})
    assert response.status_code == 404
    data = json.loads(response.data)
    assert data['error']['code'] == 'ELEMENT_NOT_FOUND'


def test_type_into_selected_field(client, sim):
    """Selectors imply typing into the selected field."""
    response = client.post('/ui/type', json={'selectors': {'id': 'email'}, 'text': 'me@example.com'})
    assert response.status_code == 200
    assert sim.find('email')['value'] == 'me@example.com'


def test_swipe_and_button(client, sim):
    """Swipe and button presses reach the simulator."""
    assert client.post('/ui/swipe', json={'direction': 'down'}).status_code == 200
    assert client.post('/ui/button', json={'name': 'home'}).status_code == 200
    assert sim.swipes == [(196.0, 426.0, 196.0, 646.0)]
    assert sim.buttons == ['HOME']


def test_wait_requires_condition(client, sim):
    """A wait without conditions is a bad request."""
    response = client.post('/ui/wait', json={'timeout': '1s'})
    assert response.status_code == 400


def test_flow_run_inline(client, sim):
    """Inline flows run step by step."""
    flow = {'name': 'inline', 'steps': [{'action': 'tap', 'selectors': {'label': 'Next'}}]}
    response = client.post('/ui/flow/run', json={'flow': flow})
    assert response.status_code == 200
    data = json.loads(response.data)
    assert data['steps'][0]['elementId'] == 'next'


def test_flow_run_missing_flow(client, sim):
    """The flow object is required."""
    response = client.post('/ui/flow/run', json={})
    assert response.status_code == 400


@pytest.mark.parametrize('path,body', [
    ('/ui/tap', {'x': 'abc', 'y': 10}),
    ('/ui/type', {'text': 'hi', 'focusRetries': 'two'}),
    ('/ui/clear', {'selectors': {'id': 'email'}, 'maxBackspaces': 'lots'}),
    ('/ui/swipe', {'direction': 'up', 'distance': 'far'}),
    ('/ui/wait', {'hasText': 'x', 'interactiveMin': 'abc'}),
    ('/ui/flow/run', {'flow': {'name': 'f', 'steps': [{'action': 'tap', 'selectors': {'label': 'Next'}}]}, 'resumeFrom': 'x'}),
])
def test_non_numeric_fields_are_bad_requests(client, sim, path, body):
    """Unparseable numbers come back as JSON usage envelopes."""
    response = client.post(path, json=body)
    assert response.status_code == 400
    assert response.is_json
    data = json.loads(response.data)
    assert data['ok'] is False
    assert data['error']['code'] == 'USAGE'
    assert sim.taps == []


def test_unexpected_errors_are_json(client, sim, monkeypatch):
    """Foreign exceptions still return an error envelope."""
    def boom(device, name):
        raise RuntimeError("simulator went away")

    monkeypatch.setattr(server.actions, 'press_button', boom)
    response = client.post('/ui/button', json={'name': 'home'})
    assert response.status_code == 500
    data = json.loads(response.data)
    assert data['error'] == {'code': 'UNKNOWN', 'message': 'simulator went away'}
