import pytest
from sqlmodel import create_engine

from cloudbox.core.exceptions import MetadataWriteFailed, NotFound, PayloadTooLarge, StorageWriteFailed
from cloudbox.core.metrics import MetricsStore
from cloudbox.db import init_db
from cloudbox.metadata import FILES, MetadataStoreError, SqlMetadataStore
from cloudbox.services.ingestion import CommitState, IngestionPipeline, retrieval_url, two_step_commit
from cloudbox.services.retrieval import RetrievalProxy, content_disposition, served_file_name
from cloudbox.storage import LocalObjectStore, ObjectCapability, ObjectStoreError

LIMIT = 1024


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'meta.db'}", connect_args={"check_same_thread": False})
    init_db(engine)
    return engine


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(tmp_path / "blobs")


@pytest.fixture
def metadata_store(engine):
    return SqlMetadataStore(engine)


def _pipeline(object_store, metadata_store, metrics=None):
    return IngestionPipeline(object_store, metadata_store, max_file_size=LIMIT, metrics=metrics or MetricsStore())


def _blobs(object_store):
    return [key for key, _ in object_store.iter_objects()]


class FailingMetadataStore(SqlMetadataStore):
    def create_document(self, collection, fields, doc_id=None):
        raise MetadataStoreError("insert rejected")


class StubbornObjectStore(LocalObjectStore):
    def delete(self, key):
        raise ObjectStoreError("delete refused")


class ReadOnlyObjectStore(LocalObjectStore):
    def put(self, key, data, capability):
        raise ObjectStoreError("disk full")


class CollidingObjectStore(LocalObjectStore):
    def reserve_key(self):
        return "occupied"


def test_two_step_commit_outcomes():
    calls = []

    committed = two_step_commit(lambda: calls.append("a"), lambda: "value", lambda: calls.append("undo"))
    assert committed.state is CommitState.COMMITTED
    assert committed.value == "value"
    assert calls == ["a"]

    def fail():
        raise RuntimeError("b failed")

    rolled_back = two_step_commit(lambda: None, fail, lambda: calls.append("undo"))
    assert rolled_back.state is CommitState.ROLLED_BACK
    assert str(rolled_back.error) == "b failed"
    assert calls[-1] == "undo"

    def undo_fails():
        raise RuntimeError("undo failed")

    orphaned = two_step_commit(lambda: None, fail, undo_fails)
    assert orphaned.state is CommitState.ROLLBACK_FAILED
    assert str(orphaned.undo_error) == "undo failed"
    assert not orphaned.committed


def test_first_step_failure_propagates_without_undo():
    undone = []

    def first():
        raise ValueError("nothing written")

    with pytest.raises(ValueError):
        two_step_commit(first, lambda: None, lambda: undone.append(True))
    assert undone == []


def test_ingest_stores_blob_and_record(object_store, metadata_store):
    metrics = MetricsStore()
    record = _pipeline(object_store, metadata_store, metrics).ingest("u1", b"0123456789", "notes.txt")

    assert record.storage_key
    assert record.size == 10
    assert record.mime_type == "text/plain"
    assert object_store.get(record.storage_key) == b"0123456789"
    assert object_store.capability(record.storage_key).owner_id == "u1"
    assert metadata_store.query_documents(FILES, storage_key=record.storage_key)[0].id == record.id
    assert metrics.snapshot()["uploads"] == 1


def test_oversized_upload_touches_no_store(object_store, metadata_store):
    with pytest.raises(PayloadTooLarge):
        _pipeline(object_store, metadata_store).ingest("u1", b"x" * (LIMIT + 1), "big.bin")
    assert _blobs(object_store) == []
    assert metadata_store.query_documents(FILES) == []


def test_blob_write_failure_creates_no_record(tmp_path, metadata_store):
    store = ReadOnlyObjectStore(tmp_path / "blobs")
    with pytest.raises(StorageWriteFailed):
        _pipeline(store, metadata_store).ingest("u1", b"data", "a.txt")
    assert metadata_store.query_documents(FILES) == []


def test_key_collision_keeps_the_existing_blob(tmp_path, metadata_store):
    store = CollidingObjectStore(tmp_path / "blobs")
    store.put("occupied", b"original", ObjectCapability(owner_id="u2"))

    with pytest.raises(StorageWriteFailed):
        _pipeline(store, metadata_store).ingest("u1", b"data", "a.txt")

    assert store.get("occupied") == b"original"
    assert store.capability("occupied").owner_id == "u2"
    assert metadata_store.query_documents(FILES) == []


def test_metadata_failure_compensates_blob(object_store, engine):
    metrics = MetricsStore()
    with pytest.raises(MetadataWriteFailed):
        _pipeline(object_store, FailingMetadataStore(engine), metrics).ingest("u1", b"data", "a.txt")

    assert _blobs(object_store) == []
    assert SqlMetadataStore(engine).query_documents(FILES) == []
    assert metrics.snapshot()["ingest_rollbacks"] == 1


def test_failed_compensation_is_reported_as_metadata_failure(tmp_path, engine, caplog):
    store = StubbornObjectStore(tmp_path / "blobs")
    metrics = MetricsStore()

    with pytest.raises(MetadataWriteFailed):
        _pipeline(store, FailingMetadataStore(engine), metrics).ingest("u1", b"data", "a.txt")

    assert len(_blobs(store)) == 1
    assert metrics.snapshot()["orphan_risks"] == 1
    assert "orphan_risk=true" in caplog.text


def test_retrieval_url_points_at_proxy():
    assert retrieval_url("abc", "https://files.test") == "https://files.test/api/proxy-download?fileId=abc"


def test_served_name_is_sanitized_and_gets_extension():
    assert served_file_name("my report", "application/pdf") == "my report.pdf"
    assert served_file_name("a/b\\cé.txt", "text/plain") == "a_b_c_.txt"
    assert served_file_name(None, "image/svg+xml") == "downloaded-file.svg"


def test_content_disposition_carries_both_names():
    header = content_disposition("résumé.pdf", "application/pdf", inline=True)
    assert header.startswith('inline; filename="r_sum_.pdf"')
    assert "filename*=UTF-8''r%C3%A9sum%C3%A9.pdf" in header


def test_retrieve_streams_bytes_with_framing(object_store, metadata_store):
    record = _pipeline(object_store, metadata_store).ingest("u1", b"0123456789", "notes.txt")
    proxy = RetrievalProxy(object_store, metadata_store, MetricsStore())

    attachment = proxy.retrieve(record.id)
    assert attachment.read() == b"0123456789"
    assert attachment.headers["Content-Length"] == "10"
    assert attachment.headers["Content-Type"] == "text/plain"
    assert attachment.disposition.startswith('attachment; filename="notes.txt"')

    inline = proxy.retrieve(record.id, inline=True)
    assert inline.disposition.startswith("inline;")
    inline.close()


def test_retrieve_releases_handle_when_abandoned(object_store, metadata_store):
    record = _pipeline(object_store, metadata_store).ingest("u1", b"x" * 200, "a.bin")
    proxy = RetrievalProxy(object_store, metadata_store, MetricsStore())

    retrieved = proxy.retrieve(record.id)
    chunks = retrieved.iter_bytes()
    next(chunks)
    chunks.close()

    assert retrieved._handle.stream.closed


@pytest.mark.parametrize("inline", [True, False])
def test_retrieve_unknown_file_is_not_found(object_store, metadata_store, inline):
    with pytest.raises(NotFound):
        RetrievalProxy(object_store, metadata_store, MetricsStore()).retrieve("missing", inline=inline)


def test_retrieve_hides_missing_blob(object_store, metadata_store, caplog):
    record = _pipeline(object_store, metadata_store).ingest("u1", b"data", "a.txt")
    object_store.delete(record.storage_key)

    with pytest.raises(NotFound) as excinfo:
        RetrievalProxy(object_store, metadata_store, MetricsStore()).retrieve(record.id)

    assert excinfo.value.message == "File not found"
    assert "integrity_defect" in caplog.text


def test_retrieve_skips_trashed_files(object_store, metadata_store):
    record = _pipeline(object_store, metadata_store).ingest("u1", b"data", "a.txt")
    metadata_store.update_document(FILES, record.id, {"is_deleted": True})

    with pytest.raises(NotFound):
        RetrievalProxy(object_store, metadata_store, MetricsStore()).retrieve(record.id)
