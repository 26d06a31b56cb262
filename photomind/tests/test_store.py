import json

import numpy as np
import pytest

from photomind.errors import StoreError
from photomind.store import BoundingBox, NewDetection, VectorStore, vector_version_for


def _store(tmp_path) -> VectorStore:
    return VectorStore(tmp_path / "db" / "photomind.db")


def _vec(dim: int, seed: int = 0) -> np.ndarray:
    v = np.random.default_rng(seed).standard_normal(dim).astype(np.float32)
    return v / np.linalg.norm(v)


def _det(face=None, semantic=None, conf=0.9) -> NewDetection:
    return NewDetection(BoundingBox(10, 20, 30, 40), conf, face_embedding=face, semantic_embedding=semantic)


def test_add_photo_dedupes_by_file_path(tmp_path):
    store = _store(tmp_path)
    first = store.add_photo("/photos/a.jpg", width=100, height=50)
    second = store.add_photo("/photos/a.jpg", width=999)
    assert first == second
    assert len(store.all_photos()) == 1
    assert store.get_photo_by_id(first).width == 100


def test_photo_lookups(tmp_path):
    store = _store(tmp_path)
    pid = store.add_photo("/photos/trip/lake.jpg", uuid="u-1", exif_data={"Make": "Canon"})
    photo = store.get_photo_by_uuid("u-1")
    assert photo.id == pid
    assert photo.file_name == "lake.jpg"
    assert json.loads(photo.exif_data) == {"Make": "Canon"}
    assert store.get_photo_by_file_path("/photos/trip/lake.jpg").uuid == "u-1"
    assert store.get_photo_by_id(12345) is None


def test_vector_version_rules():
    assert vector_version_for(None, None) == 0
    assert vector_version_for(_vec(128), None) == 1
    assert vector_version_for(_vec(128), _vec(512)) == 2
    assert vector_version_for(None, _vec(512)) == 0


def test_replace_detections_deletes_then_inserts(tmp_path):
    store = _store(tmp_path)
    pid = store.add_photo("/p/1.jpg")
    store.replace_detections(pid, [_det(_vec(128, 1)), _det(_vec(128, 2), _vec(512, 3))])
    store.replace_detections(pid, [_det(_vec(128, 4), _vec(512, 5))])
    faces = store.faces_for_photo(pid)
    assert len(faces) == 1
    assert faces[0].vector_version == 2
    np.testing.assert_array_equal(faces[0].face_embedding, _vec(128, 4))
    assert faces[0].semantic_embedding.shape == (512,)


def test_redetection_drops_emptied_automatic_persons(tmp_path):
    store = _store(tmp_path)
    p1 = store.add_photo("/p/1.jpg")
    p2 = store.add_photo("/p/2.jpg")
    [f1] = store.replace_detections(p1, [_det(_vec(128, 1))])
    [f2] = store.replace_detections(p2, [_det(_vec(128, 2))])
    auto = store.create_person("Unnamed 1")
    manual = store.create_person("Alice", is_manual=True)
    store.assign_face(f1, auto)
    store.assign_face(f2, manual)

    store.replace_detections(p1, [])
    store.replace_detections(p2, [])
    assert store.get_person(auto) is None
    kept = store.get_person(manual)
    assert kept.face_count == 0
    assert [p.id for p in store.list_persons()] == [manual]


def test_redetection_keeps_person_with_other_faces(tmp_path):
    store = _store(tmp_path)
    p1 = store.add_photo("/p/1.jpg")
    p2 = store.add_photo("/p/2.jpg")
    [f1] = store.replace_detections(p1, [_det(_vec(128, 1))])
    [f2] = store.replace_detections(p2, [_det(_vec(128, 2))])
    auto = store.create_person("Unnamed 1")
    store.assign_face(f1, auto)
    store.assign_face(f2, auto)

    store.replace_detections(p1, [])
    assert store.get_person(auto).face_count == 1


def test_unprocessed_photos_cursor_and_order(tmp_path):
    store = _store(tmp_path)
    ids = [store.add_photo(f"/p/{i}.jpg") for i in range(6)]
    store.replace_detections(ids[1], [_det(_vec(128))])
    store.mark_photo_scanned(ids[2])

    pending = [p.id for p in store.get_unprocessed_photos(limit=100)]
    assert pending == [ids[0], ids[3], ids[4], ids[5]]
    assert [p.id for p in store.get_unprocessed_photos(limit=100, after_id=ids[3])] == [ids[4], ids[5]]
    assert [p.id for p in store.get_unprocessed_photos(limit=1)] == [ids[0]]
    assert store.count_unprocessed_photos() == 4


def test_malformed_blob_reads_as_none(tmp_path):
    store = _store(tmp_path)
    pid = store.add_photo("/p/1.jpg")
    [fid] = store.replace_detections(pid, [_det(_vec(128))])
    store.run("UPDATE detected_faces SET face_embedding = ? WHERE id = ?", (b"\x00\x01\x02", fid))
    assert store.get_face(fid).face_embedding is None


def test_assign_and_unassign_refresh_counts(tmp_path):
    store = _store(tmp_path)
    pid = store.add_photo("/p/1.jpg")
    f1, f2 = store.replace_detections(pid, [_det(_vec(128, 1)), _det(_vec(128, 2))])
    alice = store.create_person("Alice", is_manual=True)
    store.assign_face(f1, alice)
    store.assign_face(f2, alice)
    assert store.get_person(alice).face_count == 2
    assert store.unassign_face(f1) == alice
    assert store.get_person(alice).face_count == 1
    assert [f.id for f in store.unassigned_faces()] == [f1]


def test_delete_orphan_persons_keeps_manual(tmp_path):
    store = _store(tmp_path)
    store.create_person("Unnamed 1")
    manual = store.create_person("Bob", is_manual=True)
    assert store.delete_orphan_persons() == 1
    assert [p.id for p in store.list_persons()] == [manual]


def test_duplicate_person_name_raises_store_error(tmp_path):
    store = _store(tmp_path)
    store.create_person("Alice")
    with pytest.raises(StoreError):
        store.create_person("Alice")


def test_reset_detections(tmp_path):
    store = _store(tmp_path)
    pid = store.add_photo("/p/1.jpg")
    [fid] = store.replace_detections(pid, [_det(_vec(128))])
    store.mark_photo_scanned(pid)
    auto = store.create_person("Unnamed 1")
    store.assign_face(fid, auto)
    store.reset_detections()
    assert store.all_faces_with_vectors() == []
    assert store.get_person(auto) is None
    assert store.count_unprocessed_photos() == 1


def test_face_stats(tmp_path):
    store = _store(tmp_path)
    pid = store.add_photo("/p/1.jpg")
    f1, _ = store.replace_detections(pid, [_det(_vec(128, 1), _vec(512, 2)), _det(_vec(128, 3))])
    store.assign_face(f1, store.create_person("Alice"))
    stats = store.face_stats()
    assert stats["total_faces"] == 2
    assert stats["matched_faces"] == 1
    assert stats["match_rate"] == pytest.approx(0.5)
    assert stats["by_vector_version"] == {1: 1, 2: 1}


def test_max_unnamed_index(tmp_path):
    store = _store(tmp_path)
    store.create_person("Unnamed 3")
    store.create_person("Unnamed 10")
    store.create_person("Unnamed x")
    assert store.max_unnamed_index("Unnamed") == 10
