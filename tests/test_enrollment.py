import dataclasses
import os
import sqlite3

import pytest

from attendance_service.errors import ConflictError, InputError, StoreError, ValidationError
from attendance_service.recognition.enrollment import EnrollmentValidator

from conftest import blob, vec


def _images(extractor, *face_lists):
    images = []
    for i, faces in enumerate(face_lists):
        data = f'photo-{i}'.encode()
        extractor.faces[data] = faces
        images.append(blob(data))
    return images


def _assert_store_empty(store):
    assert store.count_identities() == 0
    assert store.count_embeddings() == 0


def test_consistent_photos_create_identity_with_three_embeddings(enrollment, extractor, store):
    images = _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.0, 0.1)])

    enrolled = enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert enrolled.identity.identity_key == 'S1'
    assert enrolled.identity.external_key == 'app-1'
    assert len(enrolled.embeddings) == 3
    assert store.count_identities() == 1
    assert store.count_embeddings('S1') == 3
    # Lenient mode asks the extractor for the single best face
    assert all(single for _, single in extractor.calls)


def test_identity_key_is_generated_when_omitted(enrollment, extractor, store):
    images = _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2)])

    enrolled = enrollment.validate_and_build('app-1', 'Ann', images)

    assert len(enrolled.identity.identity_key) == 32
    assert store.get_identity(enrolled.identity.identity_key) == enrolled.identity


def test_resubmitting_same_external_key_conflicts(enrollment, extractor, store):
    images = _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2)])
    enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    with pytest.raises(ConflictError):
        enrollment.validate_and_build('app-1', 'Ann again', images, identity_key='S2')
    with pytest.raises(ConflictError):
        enrollment.validate_and_build('app-2', 'Ann again', images, identity_key='S1')

    assert store.count_identities() == 1


@pytest.mark.parametrize('count', [0, 1, 2, 4])
def test_wrong_image_count_is_input_error(enrollment, extractor, store, count):
    images = _images(extractor, *([[vec(0.0)]] * count))

    with pytest.raises(InputError, match='exactly 3 images required'):
        enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert extractor.calls == []
    _assert_store_empty(store)


@pytest.mark.parametrize('external_key, name, identity_key', [
    ('', 'Ann', 'S1'),
    ('app-1', '  ', 'S1'),
    ('app-1', 'Ann', ' '),
])
def test_blank_fields_are_input_errors(enrollment, extractor, store, external_key, name, identity_key):
    images = _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2)])

    with pytest.raises(InputError):
        enrollment.validate_and_build(external_key, name, images, identity_key=identity_key)

    _assert_store_empty(store)


def test_no_face_in_second_image_persists_nothing(enrollment, extractor, store):
    images = _images(extractor, [vec(0.0)], [], [vec(0.1)])

    with pytest.raises(ValidationError) as exc_info:
        enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert exc_info.value.message == 'no face detected'
    assert exc_info.value.image_index == 1
    _assert_store_empty(store)


def test_lowest_failing_image_is_reported(enrollment, extractor, store):
    images = _images(extractor, [vec(0.0)], [], [])

    with pytest.raises(ValidationError) as exc_info:
        enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert exc_info.value.image_index == 1


def test_two_different_people_rejected(enrollment, extractor, store):
    images = _images(extractor, [vec(0.0)], [vec(0.0)], [vec(0.75)])

    with pytest.raises(ValidationError, match='images are not of the same person'):
        enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    _assert_store_empty(store)


def test_all_pairs_are_checked(enrollment, extractor, store):
    # Both within 0.6 of the first photo, but 0.8 from each other
    images = _images(extractor, [vec(0.0)], [vec(0.4)], [vec(-0.4)])

    with pytest.raises(ValidationError, match='not of the same person'):
        enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    _assert_store_empty(store)


def test_unreadable_image_rejected(enrollment, extractor, store):
    images = _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2)])
    del extractor.faces[b'photo-2']

    with pytest.raises(ValidationError) as exc_info:
        enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert exc_info.value.message == 'could not read image'
    assert exc_info.value.image_index == 2
    _assert_store_empty(store)


def test_multiple_faces_allowed_in_lenient_mode(enrollment, extractor, store):
    images = _images(extractor, [vec(0.0), vec(3.0)], [vec(0.1)], [vec(0.2)])

    enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert store.count_embeddings('S1') == 3


def test_multiple_faces_rejected_in_strict_mode(store, extractor, config):
    strict = EnrollmentValidator(store, extractor, dataclasses.replace(config, require_single_face=True))
    images = _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2), vec(3.0)])

    with pytest.raises(ValidationError) as exc_info:
        strict.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert exc_info.value.message == 'multiple faces detected'
    assert exc_info.value.image_index == 2
    assert not any(single for _, single in extractor.calls)
    _assert_store_empty(store)


def test_race_with_concurrent_enrollment_surfaces_as_conflict(enrollment, extractor, store, config, monkeypatch):
    first = _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2)])
    enrollment.validate_and_build('app-1', 'Ann', first, identity_key='S1')

    # Simulate losing the check-then-insert race
    monkeypatch.setattr(store, 'identity_exists', lambda *args, **kwargs: False)

    with pytest.raises(ConflictError):
        enrollment.validate_and_build('app-1', 'Ann', first, identity_key='S2')

    assert store.count_identities() == 1
    assert store.count_embeddings() == 3
    assert len(os.listdir(config.upload_dir)) == 3


def test_photos_are_saved_and_referenced_by_embeddings(enrollment, extractor, store, config, tmp_path):
    images = [
        dataclasses.replace(image, source_ref='upload:photo.jpg')
        for image in _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2)])
    ]

    enrolled = enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    refs = [e.source_ref for e in enrolled.embeddings]
    assert len(set(refs)) == 3
    for i, ref in enumerate(refs):
        assert os.path.dirname(ref) == str(tmp_path / 'uploads')
        assert os.path.basename(ref).startswith('S1_')
        assert ref.endswith(f'_{i}.jpg')
        with open(ref, 'rb') as f:
            assert f.read() == f'photo-{i}'.encode()

    with sqlite3.connect(config.db_path) as conn:
        stored = [row[0] for row in conn.execute('SELECT source_ref FROM embeddings ORDER BY id')]
    assert stored == refs


def test_extension_follows_url_path(enrollment, extractor, config):
    images = [
        dataclasses.replace(image, source_ref=f'https://cdn.example.com/p/{i}.PNG?size=large')
        for i, image in enumerate(_images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2)]))
    ]

    enrolled = enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert all(e.source_ref.endswith('.png') for e in enrolled.embeddings)


def test_rejected_enrollment_saves_no_photos(enrollment, extractor, config):
    images = _images(extractor, [vec(0.0)], [], [vec(0.1)])

    with pytest.raises(ValidationError):
        enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert not os.path.exists(config.upload_dir)


def test_store_failure_removes_saved_photos(enrollment, extractor, store, config, monkeypatch):
    images = _images(extractor, [vec(0.0)], [vec(0.1)], [vec(0.2)])

    def broken(*args, **kwargs):
        raise StoreError('database is locked')

    monkeypatch.setattr(store, 'create_identity', broken)

    with pytest.raises(StoreError):
        enrollment.validate_and_build('app-1', 'Ann', images, identity_key='S1')

    assert os.listdir(config.upload_dir) == []
