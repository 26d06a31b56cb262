"""Group face detections into person identities.

auto_match is anchor-then-greedy:

1. Centroid per person that already has faces.
2. Each unassigned face whose similarity to a centroid exceeds the threshold
   joins the best-matching person.
3. The remaining faces seed clusters in arrival order. A seed absorbs every
   other leftover face whose similarity to the seed exceeds the threshold, up
   to max_cluster_size members. A cluster's confidence is the lowest
   similarity observed while it grew.
4. Clusters with at least MIN_NEW_PERSON_FACES members become new
   "Unnamed N" persons. A person that ends up with no faces is deleted.
5. Faces left out of every new person are matched against all person
   centroids again, recomputed each round, until a round assigns nothing.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field

from photomind import config
from photomind.errors import PhotomindError, StoreError, UnknownFace, UnknownPerson
from photomind.store import FaceDetection, Person, Photo, VectorStore
from photomind.vectors import centroid, cosine_similarity

logger = logging.getLogger(__name__)


@dataclass
class PersonCluster:
    faces: list[FaceDetection]
    confidence: float
    person_id: int | None = None
    suggested_name: str | None = None

    @property
    def face_ids(self) -> list[int]:
        return [f.id for f in self.faces]

    def to_dict(self) -> dict:
        return {
            "person_id": self.person_id,
            "face_ids": self.face_ids,
            "suggested_name": self.suggested_name,
            "confidence": round(self.confidence, 4),
        }


@dataclass
class AutoMatchResult:
    matched: int = 0
    persons_created: int = 0
    clusters: list[PersonCluster] = field(default_factory=list)
    processing_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "persons_created": self.persons_created,
            "clusters": [c.to_dict() for c in self.clusters],
            "processing_ms": round(self.processing_ms, 1),
        }


@dataclass
class SimilarFace:
    face_id: int
    photo_id: int
    person_id: int | None
    similarity: float


@dataclass
class PersonMatch:
    person: Person
    score: float


@dataclass
class PersonPhotos:
    person: Person
    photos: list[Photo]
    total: int
    years: list[int]
    earliest: str | None = None
    latest: str | None = None

    def to_dict(self) -> dict:
        return {
            "person": asdict(self.person),
            "photos": [asdict(p) for p in self.photos],
            "total": self.total,
            "years": self.years,
            "earliest": self.earliest,
            "latest": self.latest,
        }


def _taken_year(photo: Photo) -> int | None:
    if photo.taken_at and photo.taken_at[:4].isdigit():
        return int(photo.taken_at[:4])
    return None


def _name_score(person: Person, terms: list[str]) -> float:
    """1.0 for an exact name, 0.9 for a prefix, 0.7 for a substring."""
    names = (person.name.lower(), person.display_name.lower())
    best = 0.0
    for term in terms:
        if term in names:
            return 1.0
        if any(n.startswith(term) for n in names):
            best = max(best, 0.9)
        elif any(term in n for n in names):
            best = max(best, 0.7)
    return best


def _has_vector(face: FaceDetection) -> bool:
    return face.face_embedding is not None and len(face.face_embedding) > 0


class ClusteringEngine:
    def __init__(
        self,
        store: VectorStore,
        threshold: float = config.FACE_MATCH_THRESHOLD,
        max_cluster_size: int = config.MAX_CLUSTER_SIZE,
        min_new_person_faces: int = config.MIN_NEW_PERSON_FACES,
    ):
        self._store = store
        self.threshold = threshold
        self.max_cluster_size = max_cluster_size
        self.min_new_person_faces = min_new_person_faces
        # serializes auto_match and the manual person edits
        self._lock = threading.Lock()

    def person_centroids(self) -> dict[int, object]:
        centroids = {}
        for person in self._store.named_persons():
            vectors = [f.face_embedding for f in self._store.faces_for_person(person.id) if _has_vector(f)]
            c = centroid(vectors)
            if c is not None:
                centroids[person.id] = c
        return centroids

    def auto_match(self, threshold: float | None = None, max_cluster_size: int | None = None) -> AutoMatchResult:
        with self._lock:
            return self._auto_match(
                self.threshold if threshold is None else threshold,
                self.max_cluster_size if max_cluster_size is None else max_cluster_size,
            )

    def _auto_match(self, threshold: float, max_cluster_size: int) -> AutoMatchResult:
        started = time.perf_counter()
        result = AutoMatchResult()

        faces = [f for f in self._store.unassigned_faces() if _has_vector(f)]
        if not faces:
            result.processing_ms = (time.perf_counter() - started) * 1000
            return result
        logger.info("Auto-matching %d unassigned faces (threshold %.2f)", len(faces), threshold)

        # Anchor pass: existing persons first.
        leftover, _ = self._match_to_persons(faces, threshold, result)

        # Greedy pass: seed new clusters from what is left.
        taken: set[int] = set()
        next_index = self._store.max_unnamed_index(config.UNNAMED_PREFIX) + 1
        for seed in leftover:
            if seed.id in taken:
                continue
            taken.add(seed.id)
            members = [seed]
            confidence = None
            for other in leftover:
                if len(members) >= max_cluster_size:
                    break
                if other.id in taken:
                    continue
                sim = cosine_similarity(seed.face_embedding, other.face_embedding)
                if sim > threshold:
                    members.append(other)
                    taken.add(other.id)
                    confidence = sim if confidence is None else min(confidence, sim)
            cluster = PersonCluster(
                faces=members,
                confidence=seed.confidence if confidence is None else confidence,
            )
            result.clusters.append(cluster)
            if len(members) < self.min_new_person_faces:
                continue
            cluster.suggested_name = f"{config.UNNAMED_PREFIX} {next_index}"
            next_index += 1
            assigned = self._create_person(cluster)
            if assigned:
                result.persons_created += 1
                result.matched += assigned

        # Faces that seeded no person may clear the threshold against a person
        # created above. Repeat until a round assigns nothing.
        pending = [f for c in result.clusters if c.person_id is None for f in c.faces]
        absorbed: dict[int, int] = {}
        while pending:
            pending, newly = self._match_to_persons(pending, threshold, result)
            if not newly:
                break
            absorbed.update(newly)
        for cluster in result.clusters:
            if cluster.person_id is None and len(cluster.faces) == 1:
                cluster.person_id = absorbed.get(cluster.faces[0].id)

        result.processing_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Auto-match done: %d matched, %d persons created, %d clusters in %.0fms",
            result.matched, result.persons_created, len(result.clusters), result.processing_ms,
        )
        return result

    def _match_to_persons(
        self, faces: list[FaceDetection], threshold: float, result: AutoMatchResult
    ) -> tuple[list[FaceDetection], dict[int, int]]:
        """Assign each face to the best person centroid above threshold.

        Centroids are taken once per call. Returns the faces left over and a
        face id to person id map of what was assigned.
        """
        centroids = self.person_centroids()
        leftover = []
        assigned = {}
        for face in faces:
            best_id, best_sim = None, threshold
            for person_id, c in centroids.items():
                sim = cosine_similarity(face.face_embedding, c)
                if sim > best_sim:
                    best_id, best_sim = person_id, sim
            if best_id is None:
                leftover.append(face)
                continue
            try:
                self._store.assign_face(face.id, best_id)
            except StoreError:
                logger.warning("Could not assign face %d to person %d", face.id, best_id, exc_info=True)
                continue
            assigned[face.id] = best_id
            result.matched += 1
            logger.debug("Face %d -> person %d (%.3f)", face.id, best_id, best_sim)
        return leftover, assigned

    def _create_person(self, cluster: PersonCluster) -> int:
        try:
            person_id = self._store.create_person(cluster.suggested_name, is_manual=False)
        except StoreError:
            logger.warning("Could not create person %s", cluster.suggested_name, exc_info=True)
            cluster.suggested_name = None
            return 0
        assigned = 0
        for face in cluster.faces:
            try:
                self._store.assign_face(face.id, person_id)
                assigned += 1
            except StoreError:
                logger.warning("Could not assign face %d to new person %d", face.id, person_id, exc_info=True)
        if assigned == 0:
            self._store.delete_person(person_id)
            logger.warning("Deleted empty person %s", cluster.suggested_name)
            return 0
        cluster.person_id = person_id
        return assigned

    # -- manual operations --

    def find_similar_faces(self, face_id: int, min_similarity: float = config.SIMILAR_FACE_FLOOR) -> list[SimilarFace]:
        target = self._store.get_face(face_id)
        if target is None:
            raise UnknownFace(face_id)
        if not _has_vector(target):
            return []
        matches = []
        for face in self._store.all_faces_with_vectors():
            if face.id == face_id:
                continue
            sim = cosine_similarity(target.face_embedding, face.face_embedding)
            if sim >= min_similarity:
                matches.append(SimilarFace(face.id, face.photo_id, face.person_id, sim))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches

    def assign_faces_to_person(self, face_ids: list[int], person_id: int) -> int:
        with self._lock:
            if self._store.get_person(person_id) is None:
                raise UnknownPerson(person_id)
            assigned = 0
            for face_id in face_ids:
                if self._store.get_face(face_id) is None:
                    logger.warning("Skipping unknown face %d", face_id)
                    continue
                self._store.assign_face(face_id, person_id)
                assigned += 1
            self._store.delete_orphan_persons()
            return assigned

    def unassign_face(self, face_id: int) -> None:
        """Detach a face from its person. The detection itself is kept."""
        with self._lock:
            if self._store.get_face(face_id) is None:
                raise UnknownFace(face_id)
            previous = self._store.unassign_face(face_id)
            removed = self._store.delete_orphan_persons()
        logger.info("Unassigned face %d from person %s (%d orphan persons removed)", face_id, previous, removed)

    def merge_persons(self, source_id: int, target_id: int) -> int:
        """Move every face of source to target, then delete source."""
        if source_id == target_id:
            raise PhotomindError("Cannot merge a person into itself")
        with self._lock:
            for person_id in (source_id, target_id):
                if self._store.get_person(person_id) is None:
                    raise UnknownPerson(person_id)
            moved = self._store.reassign_person_faces(source_id, target_id)
            self._store.delete_person(source_id)
        logger.info("Merged person %d into %d (%d faces)", source_id, target_id, moved)
        return moved

    def person_faces(self, person_id: int) -> list[FaceDetection]:
        if self._store.get_person(person_id) is None:
            raise UnknownPerson(person_id)
        return self._store.faces_for_person(person_id)

    # -- person lookup --

    def search_persons(self, query: str, limit: int = 20) -> list[PersonMatch]:
        """Persons whose name matches any query term, most faces first.

        An empty query lists every person.
        """
        terms = query.lower().split()
        matches = []
        for person in self._store.list_persons():
            score = _name_score(person, terms) if terms else 1.0
            if score > 0:
                matches.append(PersonMatch(person, score))
        return matches[:limit]

    def person_photos(
        self, person_id: int, year: int | None = None, limit: int = 50, offset: int = 0
    ) -> PersonPhotos:
        person = self._store.get_person(person_id)
        if person is None:
            raise UnknownPerson(person_id)
        photos = self._store.photos_for_person(person_id)
        if year is not None:
            photos = [p for p in photos if _taken_year(p) == year]
        dated = sorted(p.taken_at for p in photos if p.taken_at)
        return PersonPhotos(
            person=person,
            photos=photos[offset:offset + limit],
            total=len(photos),
            years=sorted({y for y in map(_taken_year, photos) if y is not None}),
            earliest=dated[0] if dated else None,
            latest=dated[-1] if dated else None,
        )

    def stats(self) -> dict:
        stats = self._store.face_stats()
        stats["persons"] = len(self._store.list_persons())
        return stats
