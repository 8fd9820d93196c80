"""
Tests for the SQLite job store: CRUD, list ordering, legacy migration and
crash reconciliation.
"""
import json

from mediapull.jobs import Job, JobFile
from mediapull.store import JobStore


def make_job(job_id: str, status: str = 'idle', created_at: int = 0, files=None, destination='/tmp/dl') -> Job:
    if files is None:
        files = [JobFile(url='ok://a', title='A', filename='A.mp4')]
    return Job(id=job_id, playlist_name='batch', format='best', destination_dir=destination,
               files=files, status=status, created_at=created_at or int(job_id.split('-')[0]))


def test_insert_get_roundtrip(store):
    job = make_job('1000-001', files=[
        JobFile(url='ok://a', title='A', filename='01 - A.mp4', status='completed'),
        JobFile(url='ok://b', title='B', filename='02 - B.mp4'),
    ])
    job.target_container = 'mkv'
    job.number_items = True
    job.parallelism = 8
    job.progress.current_speed = '1MiB/s'
    store.insert(job)

    loaded = store.get('1000-001')
    assert loaded is not None
    assert [f.filename for f in loaded.files] == ['01 - A.mp4', '02 - B.mp4']
    assert loaded.target_container == 'mkv'
    assert loaded.number_items is True
    assert loaded.parallelism == 8
    assert loaded.created_at == 1000
    assert loaded.progress.total == 2
    assert loaded.progress.completed == 1
    # Transient fields are not persisted.
    assert loaded.progress.current_speed == ''


def test_get_unknown_returns_none(store):
    assert store.get('nope') is None


def test_update_overwrites_mutable_fields(store):
    job = make_job('1000-001')
    store.insert(job)
    job.status = 'completed'
    job.files[0].status = 'completed'
    job.recompute_progress()
    assert store.update(job) is True

    loaded = store.get(job.id)
    assert loaded.status == 'completed'
    assert loaded.files[0].status == 'completed'
    assert loaded.progress.completed == 1


def test_update_of_deleted_job_is_a_noop(store):
    job = make_job('1000-001')
    store.insert(job)
    store.delete(job.id)
    assert store.update(job) is False
    assert store.get(job.id) is None


def test_list_puts_jobs_needing_attention_first(store):
    store.insert(make_job('1000-000', status='completed'))
    store.insert(make_job('2000-000', status='error'))
    store.insert(make_job('3000-000', status='paused'))
    store.insert(make_job('4000-000', status='idle'))
    store.insert(make_job('5000-000', status='downloading'))
    store.insert(make_job('6000-000', status='zipping'))
    store.insert(make_job('7000-000', status='completed'))

    ids = [job.id for job in store.list()]
    assert ids == ['5000-000', '6000-000', '3000-000', '2000-000', '7000-000', '4000-000', '1000-000']
    assert [job.id for job in store.list(limit=2)] == ['5000-000', '6000-000']


def test_reserved_filenames(store):
    store.insert(make_job('1000-000', destination='/d1'))
    store.insert(make_job('2000-000', destination='/d2', files=[JobFile('ok://x', 'X', 'X.mp4')]))
    assert store.reserved_filenames('/d1') == ['A.mp4']
    assert store.reserved_filenames('/d1', exclude_id='1000-000') == []


def test_legacy_migration_is_idempotent(tmp_path, store):
    legacy = tmp_path / 'jobs.json'
    store.insert(make_job('1000-000'))
    legacy.write_text(json.dumps([
        {'id': '1000-000', 'playlistName': 'dup', 'format': 'best', 'tempDir': '/x', 'files': [],
         'status': 'idle', 'createdAt': 1000},
        {'id': '2000-000', 'playlistName': 'Old batch', 'format': 'bestaudio', 'concurrentFragments': 2,
         'addPrefix': True, 'tempDir': '/old', 'status': 'paused', 'createdAt': 2000,
         'files': [{'url': 'ok://a', 'title': 'A', 'filename': '01 - A.mp3', 'status': 'completed'},
                   {'url': 'ok://b', 'title': 'B', 'filename': '02 - B.mp3', 'status': 'pending'}],
         'progress': {'total': 2, 'completed': 1, 'currentFileIndex': 1}},
    ]), encoding='utf-8')

    assert store.migrate_legacy(legacy) == 1
    assert not legacy.exists()
    assert (tmp_path / 'jobs.json.bak').exists()

    migrated = store.get('2000-000')
    assert migrated.playlist_name == 'Old batch'
    assert migrated.destination_dir == '/old'
    assert migrated.number_items is True
    assert migrated.parallelism == 2
    assert migrated.status == 'paused'
    assert migrated.progress.completed == 1
    assert store.get('1000-000').playlist_name == 'batch'

    # Second run: nothing to do.
    assert store.migrate_legacy(legacy) == 0


def test_reconcile_interrupted_jobs(store):
    store.insert(make_job('1000-000', status='downloading', files=[
        JobFile('ok://a', 'A', 'A.mp4', status='completed'),
        JobFile('ok://b', 'B', 'B.mp4', status='downloading'),
        JobFile('ok://c', 'C', 'C.mp4'),
    ]))
    store.insert(make_job('2000-000', status='error'))

    assert store.reconcile_interrupted() == 1
    job = store.get('1000-000')
    assert job.status == 'paused'
    assert [f.status for f in job.files] == ['completed', 'pending', 'pending']
    assert store.get('2000-000').status == 'error'
    assert store.reconcile_interrupted() == 0


def test_store_survives_reopen(tmp_path):
    path = tmp_path / 'reopen.db'
    first = JobStore(path)
    first.insert(make_job('1000-000'))
    first.close()

    second = JobStore(path)
    try:
        assert second.get('1000-000') is not None
    finally:
        second.close()
