import json

import redis

from stackctl import events


def test_listener_receives_job_events_only():
    q = events.register_event_listener(7)
    other = events.register_event_listener(8)
    events.send_event(7, 'log', {'line': 'hello'})
    assert json.loads(q.get_nowait()) == {'type': 'log', 'data': {'line': 'hello'}}
    assert other.empty()
    events.unregister_event_listener(7, q)
    events.unregister_event_listener(7, q)
    events.send_event(7, 'log', {'line': 'again'})
    assert q.empty()


def test_events_are_published_to_redis(monkeypatch):
    published = []

    class DummyRedis:
        def ping(self):
            return True

        def publish(self, channel, data):
            published.append((channel, json.loads(data)))

    monkeypatch.setenv('REDIS_URL', 'redis://localhost:6379/0')
    monkeypatch.setattr(events.redis, 'from_url', lambda url, **kw: DummyRedis())
    events.send_event('deploy-1', 'status', {'status': 'succeeded'})
    events.send_global_event('job', {'id': 'deploy-1'})
    assert published == [
        ('stackctl-events:deploy-1', {'type': 'status', 'data': {'status': 'succeeded'}}),
        ('stackctl-events', {'type': 'job', 'data': {'id': 'deploy-1'}}),
    ]


def test_unreachable_redis_keeps_events_in_process(monkeypatch):
    def refuse(url, **kw):
        raise redis.ConnectionError('refused')

    monkeypatch.setenv('REDIS_URL', 'redis://localhost:6379/0')
    monkeypatch.setattr(events.redis, 'from_url', refuse)
    q = events.register_event_listener('x')
    events.send_event('x', 'log', {'line': 'still delivered'})
    assert not q.empty()
