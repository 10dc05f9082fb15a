"""End-to-end tests for the job processors on an in-memory broker and SQLite."""
import base64
import json
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from config import DATABASE_BACKUP, IMAGE_PROCESSING, STORAGE_MIGRATION
from db.batch_store import BatchImageStore
from db.backup import BackupService
from media.storage import LocalStorage, StorageRegistry
from taskqueue.errors import JobFailedError
from taskqueue.processors import ProcessorServices


def _png(color=(200, 30, 30), size=(8, 8)):
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def _file_data(raw, name="photo.png"):
    return {"buffer": base64.b64encode(raw).decode("ascii"), "originalname": name, "mimetype": "image/png", "size": len(raw)}


@pytest.fixture
def services(file_db, tmp_path):
    store = BatchImageStore(file_db)
    storages = StorageRegistry(
        {
            "local": LocalStorage(tmp_path / "uploads", "http://media.test"),
            "archive": LocalStorage(tmp_path / "archive", "http://archive.test"),
        }
    )
    return ProcessorServices(
        store=store,
        storages=storages,
        backups=BackupService(store, tmp_path / "backups"),
        default_quality=80,
    )


@pytest.fixture
def manager(make_manager, services):
    return make_manager(services=services)


def test_single_upload_stores_file_and_row(manager, services, tmp_path):
    handle = manager.add_image_upload_job(_file_data(_png()), {"format": "webp", "categoryId": 3})

    result = manager.wait_for(handle["queue"], handle["jobId"], timeout=10)

    assert result["success"] is True
    assert result["filename"].endswith(".webp")
    assert result["url"] == f"http://media.test/i/{result['filename']}"
    assert result["markdown"] == f"![photo.png]({result['url']})"
    assert result["html"] == f'<img src="{result["url"]}" alt="photo.png" />'
    assert (tmp_path / "uploads" / result["filename"]).read_bytes()[8:12] == b"WEBP"
    rows = services.store.list_by_storage("local")
    assert [r["filename"] for r in rows] == [result["filename"]]
    assert rows[0]["category_id"] == 3
    assert rows[0]["file_size"] == result["size"]
    assert manager.get_status(handle["queue"], handle["jobId"])["progress"] == 100


def test_upload_uses_requested_domain(manager):
    handle = manager.add_image_upload_job(_file_data(_png()), {"format": "png", "currentDomain": "https://img.example.org/"})

    result = manager.wait_for(handle["queue"], handle["jobId"], timeout=10)

    assert result["url"].startswith("https://img.example.org/i/")
    assert result["filename"].endswith(".png")


def test_upload_with_bad_buffer_fails_without_retry(manager):
    handle = manager.add_image_upload_job({"buffer": "%%% not base64 %%%", "originalname": "x.png"}, {})

    with pytest.raises(JobFailedError) as err:
        manager.wait_for(handle["queue"], handle["jobId"], timeout=10)

    assert err.value.attempts_made == 1
    assert "base64" in str(err.value)


def test_batch_upload_tolerates_a_failing_item(manager, services):
    files = [_file_data(_png((i * 20, 0, 0)), f"pic-{i}.png") for i in range(10)]
    files[4] = _file_data(b"definitely not an image", "broken.png")

    handle = manager.add_batch_image_upload_job(files, {"format": "webp"})
    result = manager.wait_for(handle["queue"], handle["jobId"], timeout=30)

    assert result["total"] == 10
    assert result["successCount"] == 9
    assert result["failCount"] == 1
    assert result["errors"][0]["index"] == 4
    assert result["errors"][0]["filename"] == "broken.png"
    assert "not a readable image" in result["errors"][0]["error"]
    assert result["errors"][0]["attemptsMade"] == 1
    status = manager.get_status(handle["queue"], handle["jobId"])
    assert status["state"] == "completed"
    assert status["progress"] == 100
    assert services.store.get_stats()["totalCount"] == 9


def test_batch_upload_rejects_empty_file_list(manager):
    handle = manager.submit(IMAGE_PROCESSING, "batch-upload", {"files": [], "options": {}})

    with pytest.raises(JobFailedError):
        manager.wait_for(IMAGE_PROCESSING, handle["jobId"], timeout=10)


def test_storage_migration_moves_every_image(manager, services, tmp_path):
    local = services.storages.get("local")
    rows = []
    for i in range(4):
        key = f"m-{i}.png"
        url = local.put(key, _png(), "image/png")
        rows.append({"filename": key, "path": key, "storage": "local", "url": url})
    services.store.batch_insert(rows)
    rows.append({"filename": "lost.png", "path": "lost.png", "storage": "local"})
    services.store.batch_insert(rows[-1:])
    progress = []
    manager.queue(STORAGE_MIGRATION).on("progress", lambda job, value: progress.append(value))

    handle = manager.add_migration_job("local", "archive")
    result = manager.wait_for(handle["queue"], handle["jobId"], timeout=20)

    assert result == {
        "success": True,
        "total": 5,
        "migrated": 4,
        "failed": 1,
        "message": "migrated 4/5 images from local to archive",
    }
    assert (tmp_path / "archive" / "m-0.png").exists()
    moved = services.store.list_by_storage("archive")
    assert len(moved) == 4
    assert moved[0]["url"] == f"http://archive.test/i/{moved[0]['path']}"
    assert moved[0]["markdown_code"] == f"![{moved[0]['filename']}]({moved[0]['url']})"
    assert progress[:2] == [5, 10]
    assert progress == sorted(progress)
    assert progress[-1] == 100


def test_storage_migration_to_same_backend_is_rejected(manager):
    handle = manager.add_migration_job("local", "local")

    with pytest.raises(JobFailedError) as err:
        manager.wait_for(handle["queue"], handle["jobId"], timeout=10)
    assert "same" in str(err.value)


@pytest.mark.parametrize("fmt", ["json", "sql"])
def test_backup_then_restore_round_trip(manager, services, fmt):
    services.store.batch_insert(
        [{"filename": "a.webp", "path": "a.webp", "file_size": 10, "url": "http://x/i/a.webp", "html_code": "<img alt='a' />"}]
    )

    handle = manager.add_backup_job(fmt)
    backup = manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)
    assert backup["format"] == fmt
    assert backup["count"] == 1

    services.store.batch_delete(["a.webp"])
    handle = manager.add_restore_job(backup["path"], fmt)
    restored = manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)

    assert restored["imported"] == 1
    rows = services.store.list_by_storage("local")
    assert [r["path"] for r in rows] == ["a.webp"]
    assert rows[0]["html_code"] == "<img alt='a' />"


def test_json_backup_file_layout(manager, services):
    services.store.batch_insert([{"filename": "b.webp", "path": "b.webp"}])

    handle = manager.add_backup_job("json")
    backup = manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)

    with open(backup["path"], encoding="utf-8") as fh:
        doc = json.load(fh)
    assert [row["path"] for row in doc["images"]] == ["b.webp"]
    assert "id" not in doc["images"][0]


def test_restore_missing_file_fails_fast(manager):
    handle = manager.add_restore_job("/nonexistent/backup.sql", "sql")

    with pytest.raises(JobFailedError) as err:
        manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)
    assert err.value.attempts_made == 1


def test_sql_restore_keeps_multiline_and_colon_values(manager, services):
    services.store.batch_insert(
        [
            {
                "filename": "a\nb.png",
                "path": "ab.png",
                "url": "http://cdn.example:8080/i/ab.png",
                "html_code": "<img\n  src=':x'; alt='it''s' />",
            }
        ]
    )

    handle = manager.add_backup_job("sql")
    backup = manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)
    services.store.batch_delete(["ab.png"])
    handle = manager.add_restore_job(backup["path"], "sql")
    restored = manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)

    assert restored["imported"] == 1
    row = services.store.list_by_storage("local")[0]
    assert row["filename"] == "a\nb.png"
    assert row["url"] == "http://cdn.example:8080/i/ab.png"
    assert row["html_code"] == "<img\n  src=':x'; alt='it''s' />"


def test_restore_outside_backup_dir_is_rejected(manager, tmp_path):
    outside = tmp_path / "elsewhere.sql"
    outside.write_text("DELETE FROM images;\n", encoding="utf-8")

    handle = manager.add_restore_job(str(outside), "sql")

    with pytest.raises(JobFailedError) as err:
        manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)
    assert "inside the backup directory" in str(err.value)
    assert err.value.attempts_made == 1


def test_restore_accepts_a_bare_backup_name(manager, services):
    services.store.batch_insert([{"filename": "c.webp", "path": "c.webp"}])
    handle = manager.add_backup_job("json")
    backup = manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)
    services.store.batch_delete(["c.webp"])

    handle = manager.add_restore_job(Path(backup["path"]).name, "json")
    restored = manager.wait_for(DATABASE_BACKUP, handle["jobId"], timeout=10)

    assert restored["imported"] == 1


def test_from_env_registers_extra_storage_backends(monkeypatch, memory_db, tmp_path):
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("STORAGE_BACKENDS", f"archive={tmp_path / 'archive'}|https://archive.example.com")

    built = ProcessorServices.from_env(memory_db)

    assert built.storages.names() == ["archive", "local"]
    url = built.storages.get("archive").put("k.png", b"x", "image/png")
    assert url == "https://archive.example.com/i/k.png"
    assert (tmp_path / "archive" / "k.png").read_bytes() == b"x"
