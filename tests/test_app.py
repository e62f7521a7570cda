import io

import pytest

from attendance_service import runtime
from attendance_service.app import create_app, parse_list

from conftest import blob, vec


@pytest.fixture
def app_client(config, clean_runtime):
    app = create_app(config)
    app.testing = True
    return app.test_client()


@pytest.fixture
def ready(config, store, extractor, clean_runtime):
    rt = runtime.init_runtime(config, extractor=extractor, store=store)
    rt.jobs.fetcher = lambda refs: [blob(ref.encode()) for ref in refs]
    return rt


def _upload(*names):
    return [(io.BytesIO(name.encode()), f'{name}.jpg', 'image/jpeg') for name in names]


def _seed_faces(extractor, prefix, center):
    names = []
    for i, offset in enumerate((vec(0.0), vec(0.05), vec(0.0, 0.05))):
        name = f'{prefix}-{i}'
        extractor.faces[name.encode()] = [center + offset]
        names.append(name)
    return names


@pytest.mark.parametrize('value, expected', [
    (None, []),
    ('', []),
    (['a', 'b'], ['a', 'b']),
    ('["a", 2]', ['a', 2]),
    ('7', [7]),
    ('plain', ['plain']),
    (5, [5]),
])
def test_parse_list(value, expected):
    assert parse_list(value) == expected


def test_health_before_and_after_init(app_client, config, store, extractor):
    response = app_client.get('/health')
    assert response.status_code == 503
    assert response.get_json()['status'] == 'initializing'

    runtime.init_runtime(config, extractor=extractor, store=store)

    response = app_client.get('/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'


def test_requests_before_init_are_rejected(app_client):
    response = app_client.get('/attendance?timetable_id=T1')
    assert response.status_code == 503
    assert response.get_json()['type'] == 'NotReadyError'


def test_enroll_student_with_uploads(app_client, ready, extractor, store):
    names = _seed_faces(extractor, 'ann', vec(0.0))

    response = app_client.post(
        '/students',
        data={'student_id': 'S1', 'app_id': 'A1', 'name': 'Ann', 'images': _upload(*names)},
        content_type='multipart/form-data',
    )

    assert response.status_code == 201
    assert response.get_json() == {'message': 'Student registered', 'student_id': 'S1'}
    assert store.count_embeddings('S1') == 3

    again = app_client.post(
        '/students',
        data={'student_id': 'S1', 'app_id': 'A1', 'name': 'Ann', 'images': _upload(*names)},
        content_type='multipart/form-data',
    )
    assert again.status_code == 409


def test_enroll_requires_fields_and_three_images(app_client, ready, extractor, store):
    names = _seed_faces(extractor, 'ann', vec(0.0))

    missing = app_client.post(
        '/students',
        data={'student_id': 'S1', 'name': 'Ann', 'images': _upload(*names)},
        content_type='multipart/form-data',
    )
    assert missing.status_code == 400

    two = app_client.post(
        '/students',
        data={'student_id': 'S1', 'app_id': 'A1', 'name': 'Ann', 'images': _upload(*names[:2])},
        content_type='multipart/form-data',
    )
    assert two.status_code == 400
    assert store.count_identities() == 0


def test_enroll_rejects_non_images(app_client, ready):
    response = app_client.post(
        '/students',
        data={
            'student_id': 'S1', 'app_id': 'A1', 'name': 'Ann',
            'images': [(io.BytesIO(b'x'), 'notes.txt', 'text/plain')] * 3,
        },
        content_type='multipart/form-data',
    )
    assert response.status_code == 400


def test_enroll_validation_error_reports_image(app_client, ready, extractor, store):
    names = _seed_faces(extractor, 'ann', vec(0.0))
    extractor.faces[names[1].encode()] = []

    response = app_client.post(
        '/students',
        data={'student_id': 'S1', 'app_id': 'A1', 'name': 'Ann', 'images': _upload(*names)},
        content_type='multipart/form-data',
    )

    assert response.status_code == 400
    body = response.get_json()
    assert body == {'error': 'no face detected', 'type': 'ValidationError', 'image_index': 1}
    assert store.count_identities() == 0


def test_enroll_with_urls(app_client, ready, extractor, store, monkeypatch):
    from attendance_service import app as app_module

    urls = [f'https://cdn.example.com/{name}' for name in _seed_faces(extractor, 'bob', vec(1.0))]
    monkeypatch.setattr(
        app_module, 'fetch_images',
        lambda refs, config, strict, allow_local: [blob(ref.rsplit('/', 1)[1].encode()) for ref in refs]
    )

    response = app_client.post(
        '/students',
        json={'student_id': 'S2', 'app_id': 'A2', 'name': 'Bob', 'image_urls': urls},
    )

    assert response.status_code == 201
    assert store.count_embeddings('S2') == 3


def test_class_attendance_with_uploads(app_client, ready, extractor, store, enroll):
    enroll('S1', vec(0.0))
    enroll('S2', vec(2.0))
    extractor.faces[b'class'] = [vec(0.1)]

    response = app_client.post(
        '/class/attendance',
        data={'timetable_id': 'T1', 'student_ids': '["S1", "S2"]', 'images': _upload('class')},
        content_type='multipart/form-data',
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body['presentCount'] == 1
    assert body['absentCount'] == 1
    assert body['present'] == ['S1']

    records = app_client.get('/attendance?timetable_id=T1').get_json()['records']
    assert [(r['student_id'], r['status']) for r in records] == [('S1', 'Present'), ('S2', 'Absent')]


def test_class_attendance_limits_uploads(app_client, ready, config):
    response = app_client.post(
        '/class/attendance',
        data={
            'timetable_id': 'T1', 'student_ids': '["S1"]',
            'images': _upload(*[f'c{i}' for i in range(config.max_class_images + 1)]),
        },
        content_type='multipart/form-data',
    )
    assert response.status_code == 400


def test_class_attendance_url(app_client, ready, extractor, store, enroll, monkeypatch):
    from attendance_service import app as app_module

    enroll('S1', vec(0.0))
    extractor.faces[b'https://h/class.jpg'] = [vec(0.0)]
    monkeypatch.setattr(
        app_module, 'fetch_images',
        lambda refs, config, strict, allow_local: [blob(r.encode()) for r in refs if 'dead' not in r]
    )

    response = app_client.post(
        '/class/attendance-url',
        json={'timetable_id': 'T9', 'student_ids': ['S1', 'S3'], 'image_urls': ['https://h/class.jpg']},
    )
    assert response.status_code == 200
    assert response.get_json()['present'] == ['S1']

    dead = app_client.post(
        '/class/attendance-url',
        json={'timetable_id': 'T9', 'student_ids': ['S1'], 'image_urls': ['https://h/dead.jpg']},
    )
    assert dead.status_code == 400


def test_background_attendance(app_client, ready, extractor, store, enroll):
    enroll('S1', vec(0.0))
    extractor.faces[b'https://h/class.jpg'] = [vec(0.0)]

    response = app_client.post(
        '/api/attendance-by-url',
        json={'timetable_id': 42, 'student_ids': [1, 'S1'], 'image_urls': '["https://h/class.jpg"]'},
    )

    assert response.status_code == 202
    body = response.get_json()
    assert body['timetable_id'] == '42'
    assert body['studentCount'] == 2
    assert body['imageCount'] == 1
    assert 'present' not in body

    ready.jobs.shutdown(wait=True)

    marks = {m.identity_key: m.status.value for m in store.get_marks('42')}
    assert marks == {'S1': 'Present', '1': 'Absent'}


def test_background_attendance_requires_fields(app_client, ready):
    response = app_client.post('/api/attendance-by-url', json={'timetable_id': 'T1'})
    assert response.status_code == 400


def test_get_attendance_requires_session(app_client, ready):
    assert app_client.get('/attendance').status_code == 400
