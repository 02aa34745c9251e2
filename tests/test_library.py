"""Tests for the JSON media library and its kv_store mirror."""

import json

import pytest

from whitelab_media.media.library import MediaLibrary
from whitelab_media.models import MediaRecord


def make_record(n, media_type="image"):
    return MediaRecord(
        id=f"web-{n}",
        title=f"Item {n}",
        type=media_type,
        original_url=f"https://cdn.example.com/{n}.jpg",
        local_original=f"/media/source/{n}.jpg",
        local_optimized=f"/media/optimized/{n}.webp",
        created_at="2026-10-19T12:00:00.000+00:00",
    )


class TestLoad:
    def test_missing_file_is_empty(self, tmp_path):
        assert MediaLibrary(tmp_path / "media.json").load() == []

    def test_corrupt_file_is_empty(self, tmp_path, caplog):
        path = tmp_path / "media.json"
        path.write_text("[{oops", encoding="utf-8")

        with caplog.at_level("WARNING"):
            assert MediaLibrary(path).load() == []
        assert "not valid JSON" in caplog.text

    def test_non_list_file_is_empty(self, tmp_path):
        path = tmp_path / "media.json"
        path.write_text('{"media": []}', encoding="utf-8")
        assert MediaLibrary(path).load() == []

    def test_malformed_entries_skipped(self, tmp_path):
        path = tmp_path / "media.json"
        good = make_record(1).to_library_dict()
        path.write_text(json.dumps([good, {"title": "no id"}]), encoding="utf-8")

        records = MediaLibrary(path).load()

        assert [r.id for r in records] == ["web-1"]

    def test_reads_camel_case_keys(self, tmp_path):
        path = tmp_path / "media.json"
        path.write_text(
            json.dumps([{"id": "x", "type": "video", "localOptimized": "/media/optimized/x.mp4"}]),
            encoding="utf-8",
        )

        record = MediaLibrary(path).load()[0]

        assert record.local_optimized == "/media/optimized/x.mp4"


class TestPersist:
    @pytest.mark.asyncio
    async def test_prepend_keeps_newest_first(self, library):
        await library.prepend(make_record(1))
        records = await library.prepend(make_record(2, "video"))

        assert [r.id for r in records] == ["web-2", "web-1"]
        assert [r.id for r in library.load()] == ["web-2", "web-1"]

    @pytest.mark.asyncio
    async def test_file_uses_camel_case(self, library):
        await library.prepend(make_record(1))

        text = library.path.read_text(encoding="utf-8")
        data = json.loads(text)
        assert text.endswith("\n")
        assert data[0]["originalUrl"] == "https://cdn.example.com/1.jpg"
        assert data[0]["localOptimized"] == "/media/optimized/1.webp"
        assert "original_url" not in data[0]

    @pytest.mark.asyncio
    async def test_prepend_mirrors_into_kv_store(self, library, store):
        await library.prepend(make_record(1))

        mirrored = store.kv_get_json("media")
        assert mirrored == json.loads(library.path.read_text(encoding="utf-8"))

    def test_save_without_store(self, tmp_path):
        library = MediaLibrary(tmp_path / "nested" / "media.json")

        library.save([make_record(1), make_record(2)])

        assert [r.id for r in library.load()] == ["web-1", "web-2"]


class TestPreserveExisting:
    """Prepending never rewrites or drops entries already in the file."""

    @pytest.mark.asyncio
    async def test_unknown_fields_and_legacy_entries_survive(self, library):
        existing = [
            {"id": "keep", "type": "image", "poster": "/p.jpg"},
            {"id": "legacy-no-type"},
        ]
        library.path.parent.mkdir(parents=True, exist_ok=True)
        library.path.write_text(json.dumps(existing), encoding="utf-8")

        records = await library.prepend(make_record(1))

        data = json.loads(library.path.read_text(encoding="utf-8"))
        assert data[0]["id"] == "web-1"
        assert data[1:] == existing
        assert [r.id for r in records] == ["web-1", "keep"]

    @pytest.mark.asyncio
    async def test_mirror_matches_raw_file(self, library, store):
        existing = [{"id": "keep", "type": "video", "featured": True}]
        library.path.parent.mkdir(parents=True, exist_ok=True)
        library.path.write_text(json.dumps(existing), encoding="utf-8")

        await library.prepend(make_record(1))

        assert store.kv_get_json("media")[1] == existing[0]


class TestWriteFailures:
    """File and kv mirror are updated together or not at all."""

    @pytest.mark.asyncio
    async def test_mirror_failure_leaves_file_untouched(self, library, store, monkeypatch):
        library.save([make_record(1)])
        before = library.path.read_text(encoding="utf-8")

        def broken_put(key, value):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(store, "kv_put_json", broken_put)

        with pytest.raises(RuntimeError):
            await library.prepend(make_record(2))

        assert library.path.read_text(encoding="utf-8") == before

    @pytest.mark.asyncio
    async def test_file_failure_restores_mirror(self, library, store, monkeypatch):
        library.save([make_record(1)])
        before = store.kv_get("media")

        def broken_write(data):
            raise OSError("disk full")

        monkeypatch.setattr(library, "_write", broken_write)

        with pytest.raises(OSError):
            await library.prepend(make_record(2))

        assert store.kv_get("media") == before

    @pytest.mark.asyncio
    async def test_file_failure_clears_new_mirror(self, library, store, monkeypatch):
        def broken_write(data):
            raise OSError("disk full")

        monkeypatch.setattr(library, "_write", broken_write)

        with pytest.raises(OSError):
            await library.prepend(make_record(1))

        assert store.kv_get("media") is None
