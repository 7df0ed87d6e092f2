from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from manga_worker.adapters.local_adapter import LocalFileStorageAdapter
from manga_worker.adapters.memory_adapter import InMemoryMetadataStore, InMemoryChapterStatusBridge
from manga_worker.adapters.postgres_adapter import PostgresMetadataStoreAdapter, PostgresChapterStatusBridge
from manga_worker.adapters.s3_adapter import S3FileStorageAdapter
from manga_worker.errors import StorageUnavailable
from manga_worker.models import (
    UploadedFile, FileStatus, ChapterOutcome, ProcessingResult, MangaMetadata, PageMetadata,
)


def result_with_pages(file_id="f1", count=2):
    pages = [PageMetadata(index=i, filename=f"{i:03d}.png", width=10, height=20, format="png",
                          is_cover=i == 0, hash=f"{i:064x}") for i in range(count)]
    return ProcessingResult(
        file_id=file_id,
        metadata=MangaMetadata(title="Monster"),
        pages=pages,
        cover=pages[0],
        thumbnail_paths={i: {16: f"t/{i}_16.webp"} for i in range(count)},
    )


class TestLocalFileStorage:
    def test_open_for_read_resolves_under_root(self, tmp_path):
        (tmp_path / "uploads").mkdir()
        (tmp_path / "uploads" / "a.cbz").write_bytes(b"PK\x03\x04")
        storage = LocalFileStorageAdapter(str(tmp_path), str(tmp_path / "thumbs"))

        with storage.open_for_read("a", "uploads/a.cbz") as f:
            assert f.read() == b"PK\x03\x04"

    def test_missing_file_is_storage_unavailable(self, tmp_path):
        storage = LocalFileStorageAdapter(str(tmp_path), str(tmp_path / "thumbs"))

        with pytest.raises(StorageUnavailable):
            storage.open_for_read("missing")

    def test_write_thumbnail_uses_deterministic_location(self, tmp_path):
        local = tmp_path / "scratch.webp"
        local.write_bytes(b"RIFF....WEBP")
        storage = LocalFileStorageAdapter(str(tmp_path), str(tmp_path / "thumbs"))

        first = storage.write_thumbnail("file/1", 3, 128, str(local))
        second = storage.write_thumbnail("file/1", 3, 128, str(local))

        assert first == second == str(tmp_path / "thumbs" / "file_1" / "page_0003_128.webp")
        assert sorted(p.name for p in (tmp_path / "thumbs" / "file_1").iterdir()) == ["page_0003_128.webp"]


class TestInMemoryMetadataStore:
    def test_lifecycle(self):
        store = InMemoryMetadataStore()
        store.add_file(UploadedFile(id="a", original_filename="a.cbz"))

        assert store.mark_processing("a") == 1
        assert store.get_file("a").status == FileStatus.PROCESSING
        store.mark_pending("a")
        assert store.get_pending_files() == ["a"]
        assert store.mark_processing("a") == 2
        store.mark_error("a", "truncated", 2)

        record = store.get_file("a")
        assert (record.status, record.processing_attempts, record.error_message) == (FileStatus.ERROR, 2, "truncated")
        assert store.get_pending_files() == []

    def test_get_file_returns_a_copy(self):
        store = InMemoryMetadataStore()
        store.add_file(UploadedFile(id="a", original_filename="a.cbz"))

        store.get_file("a").status = FileStatus.DELETED

        assert store.get_file("a").status == FileStatus.UPLOADED

    def test_unknown_file(self):
        store = InMemoryMetadataStore()

        assert store.get_file("nope") is None
        with pytest.raises(KeyError):
            store.mark_processing("nope")

    def test_chapter_bridge_records_events(self):
        bridge = InMemoryChapterStatusBridge()

        bridge.on_processing_started("ch")
        bridge.on_processing_finished("ch", ChapterOutcome.READY)

        assert bridge.events == [("ch", "processing"), ("ch", "ready")]


class TestS3FileStorage:
    @pytest.fixture
    def storage(self):
        storage = S3FileStorageAdapter(bucket="manga", prefix="manga/")
        storage.s3 = MagicMock()
        return storage

    def test_connect_creates_client(self):
        with patch("manga_worker.adapters.s3_adapter.boto3.client") as client:
            storage = S3FileStorageAdapter(bucket="manga", region="eu-west-1")
            storage.connect()

        client.assert_called_once_with("s3", region_name="eu-west-1")

    def test_open_for_read_downloads_into_spool(self, storage):
        storage.s3.download_fileobj.side_effect = lambda bucket, key, f: f.write(b"PK\x03\x04data")

        stream = storage.open_for_read("a")

        assert stream.read() == b"PK\x03\x04data"
        storage.s3.download_fileobj.assert_called_once()
        assert storage.s3.download_fileobj.call_args[0][:2] == ("manga", "manga/uploads/a")

    def test_stored_path_is_used_as_key(self, storage):
        storage.open_for_read("a", "/raw/a.cbz")

        assert storage.s3.download_fileobj.call_args[0][1] == "raw/a.cbz"

    def test_client_error_is_storage_unavailable(self, storage):
        storage.s3.download_fileobj.side_effect = ClientError(
            {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
        )

        with pytest.raises(StorageUnavailable):
            storage.open_for_read("a")

    def test_write_thumbnail(self, storage):
        location = storage.write_thumbnail("a", 0, 128, "/tmp/x/page_0000_128.webp")

        assert location == "s3://manga/manga/thumbnails/a/page_0000_128.webp"
        storage.s3.upload_file.assert_called_once_with(
            "/tmp/x/page_0000_128.webp", "manga", "manga/thumbnails/a/page_0000_128.webp",
            ExtraArgs={"ContentType": "image/webp"},
        )

    def test_upload_failure_is_storage_unavailable(self, storage):
        storage.s3.upload_file.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )

        with pytest.raises(StorageUnavailable):
            storage.write_thumbnail("a", 0, 128, "/tmp/x/page_0000_128.webp")


@pytest.fixture
def pg_cursor():
    cursor = MagicMock()
    connection = MagicMock()
    connection.cursor.return_value.__enter__.return_value = cursor
    pool = MagicMock()
    pool.connection.return_value.__enter__.return_value = connection
    return pool, connection, cursor


class TestPostgresMetadataStore:
    @pytest.fixture
    def store(self, pg_cursor):
        pool, _, _ = pg_cursor
        store = PostgresMetadataStoreAdapter("postgresql://worker@db/manga")
        store.pool = pool
        return store

    def test_get_file_maps_row(self, store, pg_cursor):
        _, _, cursor = pg_cursor
        cursor.fetchone.return_value = {
            "id": 7, "original_filename": "a.CBR", "container_format": "CBR", "size_bytes": 10,
            "status": "uploaded", "processing_attempts": None, "error_message": None,
            "uploaded_at": None, "processed_at": None, "stored_path": "uploads/a.cbr", "chapter_id": 3,
        }

        file = store.get_file("7")

        assert file.id == "7"
        assert file.container_format.value == "cbr"
        assert file.processing_attempts == 0
        assert file.chapter_id == "3"

    def test_mark_processing_returns_new_attempt_count(self, store, pg_cursor):
        _, connection, cursor = pg_cursor
        cursor.fetchone.return_value = {"processing_attempts": 2}

        assert store.mark_processing("7") == 2
        connection.commit.assert_called_once()

    def test_mark_processing_unknown_file(self, store, pg_cursor):
        _, _, cursor = pg_cursor
        cursor.fetchone.return_value = None

        with pytest.raises(KeyError):
            store.mark_processing("7")

    def test_mark_processed_upserts_pages_and_thumbnails(self, store, pg_cursor):
        _, connection, cursor = pg_cursor

        store.mark_processed("7", result_with_pages("7"))

        page_rows = cursor.executemany.call_args_list[0][0][1]
        thumb_rows = cursor.executemany.call_args_list[1][0][1]
        assert [row[1] for row in page_rows] == [0, 1]
        assert [row[-1] for row in page_rows] == [f"{0:064x}", f"{1:064x}"]
        assert sorted(thumb_rows) == [("7", 0, 16, "t/0_16.webp"), ("7", 1, 16, "t/1_16.webp")]
        assert "ON CONFLICT" in cursor.executemany.call_args_list[0][0][0]
        connection.commit.assert_called_once()

    def test_mark_error_and_pending(self, store, pg_cursor):
        _, _, cursor = pg_cursor

        store.mark_error("7", "truncated", 3)
        store.mark_pending("7")

        error_params = cursor.execute.call_args_list[0][0][1]
        assert error_params == ("truncated", 3, "7")
        assert "status = 'processing'" in cursor.execute.call_args_list[1][0][0]

    def test_get_pending_files(self, store, pg_cursor):
        _, _, cursor = pg_cursor
        cursor.fetchall.return_value = [{"id": 1}, {"id": 2}]

        assert store.get_pending_files() == ["1", "2"]


def test_postgres_chapter_bridge_sets_status(pg_cursor):
    pool, _, cursor = pg_cursor
    bridge = PostgresChapterStatusBridge("postgresql://worker@db/manga")
    bridge.pool = pool

    bridge.on_processing_started("3")
    bridge.on_processing_finished("3", ChapterOutcome.ERROR)

    assert [c[0][1] for c in cursor.execute.call_args_list] == [("processing", "3"), ("error", "3")]
