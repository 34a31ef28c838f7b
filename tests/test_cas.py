import multiprocessing

import pytest

from offload.queue.storage import LocalCASObject, ConflictError

NUM_WORKERS = 4
NUM_INCREMENTS = 15


def _increment_worker(filename_base, num_increments):
    # Each process gets its own instance pointing to the same files
    cas_obj = LocalCASObject(filename_base)

    def increment_counter(data):
        data["counter"] = data.get("counter", 0) + 1
        return data

    for _ in range(num_increments):
        cas_obj.update_with_retry(increment_counter, max_retries=50, base_delay=0.005)


def test_concurrent_processes_lose_no_updates(tmp_path):
    filename_base = str(tmp_path / "queue")
    LocalCASObject(filename_base)

    processes = [
        multiprocessing.Process(target=_increment_worker, args=(filename_base, NUM_INCREMENTS))
        for _ in range(NUM_WORKERS)
    ]
    for p in processes:
        p.start()
    for p in processes:
        p.join(timeout=60)

    assert all(p.exitcode == 0 for p in processes)

    final_data, final_version = LocalCASObject(filename_base).read()
    assert final_data["counter"] == NUM_WORKERS * NUM_INCREMENTS
    assert final_version == NUM_WORKERS * NUM_INCREMENTS


def test_stale_version_write_is_rejected(tmp_path):
    cas_obj = LocalCASObject(str(tmp_path / "queue"))
    data, version = cas_obj.read()

    assert cas_obj.cas_write({"owner": "A"}, version) == (True, version + 1)
    assert cas_obj.cas_write({"owner": "B"}, version) == (False, version + 1)
    assert cas_obj.read() == ({"owner": "A"}, version + 1)


def test_retries_exhausted_raise_conflict(tmp_path, monkeypatch):
    cas_obj = LocalCASObject(str(tmp_path / "queue"))
    monkeypatch.setattr(cas_obj, "cas_write", lambda data, version: (False, version + 1))

    with pytest.raises(ConflictError):
        cas_obj.update_with_retry(lambda data: data, max_retries=2, base_delay=0.001)


def test_unencodable_data_leaves_file_untouched(tmp_path):
    cas_obj = LocalCASObject(str(tmp_path / "queue"))
    cas_obj.update_with_retry(lambda data: {"counter": 1})

    with pytest.raises(TypeError):
        cas_obj.update_with_retry(lambda data: {"counter": object()})

    assert cas_obj.read() == ({"counter": 1}, 1)
