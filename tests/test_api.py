from __future__ import annotations

import io
import time
from types import SimpleNamespace

from fastapi.testclient import TestClient
from PIL import Image, ImageDraw

from colorkey.presentation import api


class FakeQueue:
    def __init__(self) -> None:
        self.calls = []

    def enqueue(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        return SimpleNamespace(id='job-123')


class FakeStorage:
    def __init__(self, objects=None) -> None:
        self.objects = objects or {}

    def get_bytes(self, key: str) -> bytes:
        return self.objects[key]

    def presigned_get_url(self, key: str, ttl_seconds: int) -> str:
        return f'https://files.example/{key}?ttl={ttl_seconds}'


def _image_bytes() -> bytes:
    img = Image.new('RGB', (20, 20), 'white')
    ImageDraw.Draw(img).rectangle((6, 6, 13, 13), fill='navy')
    out = io.BytesIO()
    img.save(out, format='PNG')
    return out.getvalue()


def test_health() -> None:
    client = TestClient(api.app)
    res = client.get('/api/health')
    assert res.status_code == 200
    assert res.json()['status'] == 'ok'
    assert res.headers['x-request-id']


def test_remove_background_returns_transparent_png() -> None:
    client = TestClient(api.app)
    res = client.post(
        '/api/remove-background',
        files={'image': ('photo.png', _image_bytes(), 'image/png')},
    )

    assert res.status_code == 200
    assert res.headers['content-type'] == 'image/png'
    assert 'transparent.png' in res.headers['content-disposition']
    with Image.open(io.BytesIO(res.content)) as image:
        assert image.size == (20, 20)
        assert image.getpixel((0, 0))[3] == 0
        assert image.getpixel((10, 10))[3] == 255


def test_remove_background_with_background_color() -> None:
    client = TestClient(api.app)
    res = client.post(
        '/api/remove-background',
        files={'image': ('photo.png', _image_bytes(), 'image/png')},
        data={'background_color': '#FF00FF', 'feather_radius': '1.5', 'white_threshold': '230'},
    )

    assert res.status_code == 200
    with Image.open(io.BytesIO(res.content)) as image:
        assert image.convert('RGBA').getpixel((0, 0)) == (255, 0, 255, 255)


def test_remove_background_requires_image() -> None:
    client = TestClient(api.app)
    res = client.post('/api/remove-background', data={'feather_radius': '2.5'})
    assert res.status_code == 400
    assert res.json()['detail'] == 'No image provided'


def test_remove_background_rejects_bad_options() -> None:
    client = TestClient(api.app)
    for data in ({'feather_radius': '0'}, {'white_threshold': '300'}, {'background_color': 'nope'}):
        res = client.post(
            '/api/remove-background',
            files={'image': ('photo.png', _image_bytes(), 'image/png')},
            data=data,
        )
        assert res.status_code == 400


def test_enqueue_single_job(monkeypatch) -> None:
    fake = FakeQueue()
    monkeypatch.setattr(api, 'queue', fake)

    client = TestClient(api.app)
    res = client.post(
        '/api/jobs/remove-bg',
        files={'file': ('a.png', _image_bytes(), 'image/png')},
        data={'white_threshold': '235', 'feather_radius': '3'},
    )

    assert res.status_code == 200
    body = res.json()
    assert body['job_id'] == 'job-123'
    args, kwargs = fake.calls[0]
    assert args[0] == 'colorkey.tasks.background_jobs.process_single_image_job'
    assert args[2:] == ('a.png', 235, 3.0, None)
    assert kwargs['result_ttl'] == api.settings.job_result_ttl_seconds


def test_enqueue_rejects_non_image(monkeypatch) -> None:
    fake = FakeQueue()
    monkeypatch.setattr(api, 'queue', fake)

    client = TestClient(api.app)
    res = client.post(
        '/api/jobs/remove-bg',
        files={'file': ('a.txt', b'hello', 'text/plain')},
    )

    assert res.status_code == 400
    assert not fake.calls


def test_enqueue_batch_job(monkeypatch) -> None:
    fake = FakeQueue()
    monkeypatch.setattr(api, 'queue', fake)

    client = TestClient(api.app)
    res = client.post(
        '/api/jobs/remove-bg-batch',
        files=[
            ('files', ('a.png', _image_bytes(), 'image/png')),
            ('files', ('b.png', _image_bytes(), 'image/png')),
        ],
    )

    assert res.status_code == 200
    args, _ = fake.calls[0]
    assert args[0] == 'colorkey.tasks.background_jobs.process_batch_images_job'
    assert [item['name'] for item in args[1]] == ['a.png', 'b.png']


def test_metrics_endpoint() -> None:
    client = TestClient(api.app)
    res = client.get('/api/metrics')
    assert res.status_code == 200
    body = res.json()
    assert 'timestamp' in body
    assert 'queue_depth' in body


def test_job_status_for_finished_job(monkeypatch) -> None:
    class DummyJob:
        id = 'job-done'
        meta = {'progress': 80, 'stage': 'upload'}
        result = {'key': 'jobs/job-done/photo.png', 'filename': 'photo.png'}

        def get_status(self, refresh=True):  # noqa: ARG002
            return 'finished'

    monkeypatch.setattr(api.Job, 'fetch', lambda *args, **kwargs: DummyJob())  # noqa: ARG005
    monkeypatch.setattr(api, 'storage', FakeStorage())
    client = TestClient(api.app)
    res = client.get('/api/jobs/job-done')

    assert res.status_code == 200
    body = res.json()
    assert body['progress'] == 100
    assert body['filename'] == 'photo.png'
    assert body['download_path'] == '/api/jobs/job-done/download'
    assert body['download_url'].startswith('https://files.example/jobs/job-done/photo.png')


def test_download_job_result(monkeypatch) -> None:
    class DummyJob:
        id = 'job-done'
        result = {'key': 'jobs/job-done/photo.png', 'filename': 'photo.png', 'content_type': 'image/png'}

        def get_status(self, refresh=True):  # noqa: ARG002
            return 'finished'

    monkeypatch.setattr(api.Job, 'fetch', lambda *args, **kwargs: DummyJob())  # noqa: ARG005
    monkeypatch.setattr(api, 'storage', FakeStorage({'jobs/job-done/photo.png': b'png-bytes'}))
    client = TestClient(api.app)
    res = client.get('/api/jobs/job-done/download')

    assert res.status_code == 200
    assert res.content == b'png-bytes'
    assert 'photo.png' in res.headers['content-disposition']


def test_cancel_job(monkeypatch) -> None:
    class DummyJob:
        id = 'job-x'

        def __init__(self) -> None:
            self._status = 'queued'

        def get_status(self, refresh=True):  # noqa: ARG002
            return self._status

        def cancel(self):
            self._status = 'canceled'

    monkeypatch.setattr(api.Job, 'fetch', lambda *args, **kwargs: DummyJob())  # noqa: ARG005
    client = TestClient(api.app)
    res = client.post('/api/jobs/job-x/cancel')
    assert res.status_code == 200
    assert res.json()['status'] == 'canceled'


def test_prometheus_metrics() -> None:
    client = TestClient(api.app)
    res = client.get('/api/metrics/prometheus')
    assert res.status_code == 200
    assert 'colorkey_' in res.text


def test_retry_failed_job(monkeypatch) -> None:
    class DummyJob:
        id = 'job-f'
        func_name = 'colorkey.tasks.background_jobs.process_single_image_job'
        args = (b'abc', 'a.png', 240, 2.5, None)
        kwargs = {}

        def get_status(self, refresh=True):  # noqa: ARG002
            return 'failed'

    class DummyQueue:
        def enqueue_call(self, **kwargs):
            return SimpleNamespace(id='job-new')

    monkeypatch.setattr(api.Job, 'fetch', lambda *args, **kwargs: DummyJob())  # noqa: ARG005
    monkeypatch.setattr(api, 'queue', DummyQueue())
    client = TestClient(api.app)
    res = client.post('/api/jobs/job-f/retry')
    assert res.status_code == 200
    assert res.json()['job_id'] == 'job-new'


def test_job_status_estimates_remaining_time(monkeypatch) -> None:
    class DummyJob:
        id = 'job-run'
        meta = {'progress': 40, 'stage': 'distance', 'started_at_ts': time.time() - 20}

        def get_status(self, refresh=True):  # noqa: ARG002
            return 'started'

    monkeypatch.setattr(api.Job, 'fetch', lambda *args, **kwargs: DummyJob())  # noqa: ARG005
    client = TestClient(api.app)
    res = client.get('/api/jobs/job-run')

    assert res.status_code == 200
    body = res.json()
    assert body['stage'] == 'distance'
    assert body['eta_seconds'] is not None
    assert body['eta_seconds'] > 0


def test_non_numeric_options_are_rejected(monkeypatch) -> None:
    fake = FakeQueue()
    monkeypatch.setattr(api, 'queue', fake)
    client = TestClient(api.app)

    res = client.post(
        '/api/remove-background',
        files={'image': ('photo.png', _image_bytes(), 'image/png')},
        data={'white_threshold': 'bright'},
    )
    assert res.status_code == 400
    assert res.json()['detail'] == 'white_threshold must be a number'

    res = client.post(
        '/api/jobs/remove-bg',
        files={'file': ('a.png', _image_bytes(), 'image/png')},
        data={'feather_radius': 'soft'},
    )
    assert res.status_code == 400
    assert not fake.calls


def test_rate_limiter_forgets_idle_clients(monkeypatch) -> None:
    monkeypatch.setattr(api.settings, 'rate_limit_per_minute', 2)
    limiter = api.RequestContextMiddleware(api.app)

    assert limiter.allow('10.0.0.1', 1000.0)
    assert limiter.allow('10.0.0.1', 1001.0)
    assert not limiter.allow('10.0.0.1', 1002.0)

    assert limiter.allow('10.0.0.2', 1100.0)

    assert '10.0.0.1' not in limiter._buckets
    assert list(limiter._buckets) == ['10.0.0.2']
