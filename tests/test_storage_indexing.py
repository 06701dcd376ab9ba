import asyncio

import pytest

from core.embedders import EmbeddingEngine, HashingEmbedder
from core.errors import StorageError
from core.indexing import EmbeddingBackfill, ImageScanner
from core.services import InMemoryImageStore, LocalObjectStore

from .fakes import make_metadata, make_record


def test_store_is_scoped_by_owner():
    store = InMemoryImageStore([make_record("a"), make_record("b", owner_id="someone-else")])

    found = asyncio.run(store.get_by_ids(["a", "b", "missing"], "user-1"))
    assert [record.id for record in found] == ["a"]

    with pytest.raises(StorageError):
        asyncio.run(store.update_embedding("b", [0.1], "user-1"))


def test_owner_filters():
    store = InMemoryImageStore(
        [
            make_record("tagged", tags=["Beach"], embedding=[1.0]),
            make_record("flagged", metadata=make_metadata(is_flagged=True)),
            make_record("plain"),
        ]
    )

    def ids(filters):
        return [record.id for record in asyncio.run(store.get_by_owner("user-1", filters))]

    assert ids({"tags": ["beach"]}) == ["tagged"]
    assert ids({"is_flagged": True}) == ["flagged"]
    assert ids({"has_embedding": False}) == ["flagged", "plain"]


def test_update_analysis_sets_known_fields_and_keeps_the_rest():
    store = InMemoryImageStore([make_record("a")])
    asyncio.run(store.update_analysis("a", {"visual_summary": "a red car", "vision_tags": ["car"]}, "user-1"))

    record = store.all_records()[0]
    assert record.visual_summary == "a red car"
    assert record.analysis == {"vision_tags": ["car"]}


def test_save_and_load_keep_records(tmp_path):
    path = tmp_path / "store" / "images.json"
    store = InMemoryImageStore([make_record("a", title="t", embedding=[0.5, 0.5], metadata=make_metadata(0.8, ["Dog"]))])
    store.save(path)

    loaded = InMemoryImageStore.load(path)
    record = loaded.all_records()[0]
    assert record.title == "t"
    assert record.embedding == [0.5, 0.5]
    assert record.metadata.keywords() == ["Dog"]
    assert len(InMemoryImageStore.load(tmp_path / "nothing.json")) == 0


def test_local_object_store_round_trip(tmp_path):
    store = LocalObjectStore(tmp_path)
    uri = asyncio.run(store.upload(b"jpeg", "atlases/x.jpg"))

    assert uri.startswith("file://")
    assert store.exists("atlases/x.jpg")
    asyncio.run(store.delete("atlases/x.jpg"))
    assert not store.exists("atlases/x.jpg")
    asyncio.run(store.delete("atlases/x.jpg"))

    with pytest.raises(StorageError):
        asyncio.run(store.upload(b"x", "../outside.jpg"))


def test_scanner_finds_images_with_stable_ids(image_files, tmp_path):
    (tmp_path / "notes.txt").write_text("not an image")
    scanner = ImageScanner(tmp_path, owner_id="user-1")

    records = scanner.scan()

    assert len(records) == len(image_files)
    assert records[0].filename == "img_00.png"
    assert records[0].metadata.quality.width == 64
    assert records[0].metadata.quality.format == "PNG"
    assert [record.id for record in ImageScanner(tmp_path).scan()] == [record.id for record in records]


def test_backfill_embeds_in_batches(image_files, tmp_path):
    records = ImageScanner(tmp_path, owner_id="user-1").scan()
    store = InMemoryImageStore(records)
    embedder = HashingEmbedder(dim=16)
    backfill = EmbeddingBackfill(EmbeddingEngine(embedder, image_store=store), batch_size=5)

    computed = asyncio.run(backfill.run(records, "user-1"))

    assert computed == len(records)
    assert embedder.calls == 3
    assert all(record.embedding for record in store.all_records())
