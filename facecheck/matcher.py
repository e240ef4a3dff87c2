"""
Face Matching Module

Linear similarity scan of a query descriptor against cached members or local
capture entries, with a fixed distance threshold and an ambiguity check, plus a
descriptor index over member descriptors backed by scikit-learn or ChromaDB.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

import numpy as np
from sklearn.metrics.pairwise import euclidean_distances

from .descriptor_extractor import distance_to_similarity

logger = logging.getLogger(__name__)


def candidate_descriptor(candidate: Any) -> Optional[np.ndarray]:
    """Return the descriptor of a Member, CacheEntry or plain dict."""
    if isinstance(candidate, dict):
        descriptor = candidate.get('face_descriptor')
        if descriptor is None:
            descriptor = candidate.get('descriptor')
    else:
        descriptor = getattr(candidate, 'face_descriptor', None)
        if descriptor is None:
            descriptor = getattr(candidate, 'descriptor', None)
    if descriptor is None:
        return None
    return np.asarray(descriptor, dtype=np.float32)


def candidate_name(candidate: Any) -> str:
    if isinstance(candidate, dict):
        return candidate.get('name', '')
    return getattr(candidate, 'name', '')


class FaceMatcher:
    """Threshold based matching of face descriptors."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize face matcher.

        Args:
            config: Configuration dictionary with matching settings
        """
        self.config = config.get('matching', {})
        self.match_threshold = self.config.get('match_threshold', 0.70)
        self.strong_match_distance = self.config.get('strong_match_distance', 0.145)
        self.possible_match_similarity = self.config.get('possible_match_similarity', 0.50)
        self.confidence_gap = self.config.get('confidence_gap', 0.10)

    def score_candidates(self, descriptor: np.ndarray,
                         candidates: List[Any]) -> List[Dict[str, Any]]:
        """
        Score every candidate that carries a compatible descriptor.

        Args:
            descriptor: Query descriptor
            candidates: Members, cache entries or dicts with a descriptor

        Returns:
            Scores sorted by similarity (highest first)
        """
        if descriptor is None or not candidates:
            return []

        query = np.asarray(descriptor, dtype=np.float32).ravel()
        usable = []
        vectors = []
        for candidate in candidates:
            stored = candidate_descriptor(candidate)
            if stored is None or stored.size != query.size:
                continue
            usable.append(candidate)
            vectors.append(stored.ravel())

        if not vectors:
            return []

        distances = euclidean_distances([query], np.vstack(vectors))[0]
        scores = [{
            'candidate': candidate,
            'name': candidate_name(candidate),
            'distance': float(distance),
            'similarity': distance_to_similarity(distance)
        } for candidate, distance in zip(usable, distances)]

        scores.sort(key=lambda score: score['similarity'], reverse=True)
        return scores

    def _decide(self, scores: List[Dict[str, Any]]) -> Dict[str, Any]:
        result = {
            'matched': False,
            'candidate': None,
            'similarity': 0.0,
            'distance': None,
            'confidence': 0.0,
            'scores': scores,
            'reason': None
        }

        if not scores:
            result['reason'] = 'no candidates'
            return result

        best = scores[0]
        result['similarity'] = best['similarity']
        result['distance'] = best['distance']

        if best['similarity'] <= self.match_threshold:
            result['reason'] = (f"best similarity {best['similarity']:.4f} "
                                f"<= threshold {self.match_threshold}")
            logger.debug(f"No match: {result['reason']}")
            return result

        if len(scores) > 1:
            gap = best['similarity'] - scores[1]['similarity']
            if gap < self.confidence_gap:
                result['reason'] = f"ambiguous match (gap {gap:.4f} < {self.confidence_gap})"
                logger.info(f"Rejected {best['name']}: {result['reason']}")
                return result

        result.update({
            'matched': True,
            'candidate': best['candidate'],
            'confidence': best['similarity']
        })
        logger.debug(f"Matched {best['name']} with similarity {best['similarity']:.4f}")
        return result

    def find_best_match(self, descriptor: np.ndarray,
                        candidates: List[Any]) -> Dict[str, Any]:
        """
        Find the best candidate for a descriptor.

        The best candidate is accepted only when its similarity exceeds the
        match threshold and, when there is more than one candidate, it beats
        the runner-up by at least the confidence gap.

        Args:
            descriptor: Query descriptor
            candidates: Members, cache entries or dicts with a descriptor

        Returns:
            Match result dictionary
        """
        return self._decide(self.score_candidates(descriptor, candidates))

    def match_index(self, descriptor: np.ndarray, index: 'DescriptorIndex',
                    members: Dict[str, Any]) -> Dict[str, Any]:
        """
        Match against a descriptor index instead of a candidate list.

        Args:
            descriptor: Query descriptor
            index: Populated descriptor index
            members: Member objects keyed by id

        Returns:
            Match result dictionary, same shape as find_best_match
        """
        hits = index.search(descriptor, k=2)
        scores = []
        for hit in hits:
            member = members.get(hit['id'])
            if member is None:
                continue
            scores.append({
                'candidate': member,
                'name': candidate_name(member),
                'distance': hit['distance'],
                'similarity': hit['similarity']
            })
        return self._decide(scores)

    def analyze(self, descriptor: np.ndarray, entries: List[Any]) -> Dict[str, Any]:
        """
        Detailed comparison used before deciding to register a new person.

        Args:
            descriptor: Descriptor of the captured face
            entries: Cached entries or members to compare against

        Returns:
            Dictionary with per-entry matches, the recommendation
            ('existing', 'possible' or 'new') and a readable message
        """
        if not entries:
            return {
                'matches': [],
                'recommendation': 'new',
                'best_match': None,
                'message': 'No existing faces in cache - will be registered as new person'
            }

        scores = {id(score['candidate']): score for score in self.score_candidates(descriptor, entries)}

        matches = []
        for entry in entries:
            score = scores.get(id(entry))
            if score is None:
                matches.append({'entry': entry, 'name': candidate_name(entry),
                                'similarity': 0.0, 'distance': None, 'is_match': False})
                continue
            matches.append({
                'entry': entry,
                'name': score['name'],
                'similarity': score['similarity'],
                'distance': score['distance'],
                'is_match': score['distance'] < self.strong_match_distance
            })

        matches.sort(key=lambda match: match['similarity'], reverse=True)
        strong = next((match for match in matches if match['is_match']), None)
        best = matches[0]

        if strong is not None:
            recommendation = 'existing'
            best_match = strong
            message = (f"Strong match: {strong['name']} with "
                       f"{strong['similarity'] * 100:.1f}% similarity")
        elif best['similarity'] > self.possible_match_similarity:
            recommendation = 'possible'
            best_match = best
            message = (f"Possible match: {best['name']} with "
                       f"{best['similarity'] * 100:.1f}% similarity, manual verification recommended")
        else:
            recommendation = 'new'
            best_match = None
            message = f"New person: highest similarity was {best['similarity'] * 100:.1f}%"

        return {
            'matches': matches,
            'recommendation': recommendation,
            'best_match': best_match,
            'message': message
        }

    def is_duplicate(self, descriptor1: Optional[np.ndarray], descriptor2: Optional[np.ndarray],
                     similarity_threshold: float) -> bool:
        """True when both descriptors exist and their similarity exceeds the threshold."""
        if descriptor1 is None or descriptor2 is None:
            return False
        a = np.asarray(descriptor1, dtype=np.float32).ravel()
        b = np.asarray(descriptor2, dtype=np.float32).ravel()
        if a.size != b.size:
            return False
        similarity = distance_to_similarity(float(np.linalg.norm(a - b)))
        return similarity > similarity_threshold


class DescriptorIndex:
    """Index of member descriptors for nearest-neighbour lookups."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize descriptor index.

        Args:
            config: Configuration dictionary; matching.backend selects
                'linear' (scikit-learn) or 'chromadb'
        """
        self.backend = config.get('matching', {}).get('backend', 'linear')
        self.index_path = config.get('storage', {}).get('index_path', 'data/descriptor_index')

        self.ids: List[str] = []
        self.vectors: List[np.ndarray] = []
        self.descriptor_size: Optional[int] = None
        # Sync thread adds members while the scanning thread searches
        self._lock = threading.RLock()

        self.chroma_client = None
        self.collection = None
        if self.backend == 'chromadb':
            self._init_chromadb()
        elif self.backend != 'linear':
            logger.warning(f"Unknown index backend {self.backend}, using linear scan")
            self.backend = 'linear'

        logger.info(f"Descriptor index initialized with backend: {self.backend}")

    def _init_chromadb(self):
        import chromadb

        self.chroma_client = chromadb.PersistentClient(path=self.index_path)
        self._reset_collection()

    def _reset_collection(self):
        try:
            self.chroma_client.delete_collection('member_descriptors')
        except Exception:
            logger.debug("No existing member_descriptors collection to delete")
        self.collection = self.chroma_client.get_or_create_collection(
            name='member_descriptors',
            metadata={'hnsw:space': 'l2'}
        )

    def __len__(self) -> int:
        return len(self.ids)

    def rebuild(self, members: List[Any]) -> int:
        """
        Replace the index contents with the given members.

        Members without a descriptor, or with a descriptor whose size differs
        from the first one indexed, are skipped.

        Returns:
            Number of indexed members
        """
        ids: List[str] = []
        vectors: List[np.ndarray] = []
        descriptor_size: Optional[int] = None

        for member in members:
            descriptor = candidate_descriptor(member)
            if descriptor is None:
                continue
            if descriptor_size is None:
                descriptor_size = descriptor.size
            if descriptor.size != descriptor_size:
                logger.warning(f"Skipping {candidate_name(member)}: descriptor size {descriptor.size}")
                continue
            ids.append(str(getattr(member, 'id', None) or member.get('id')))
            vectors.append(descriptor.ravel())

        with self._lock:
            self.ids = ids
            self.vectors = vectors
            self.descriptor_size = descriptor_size

            if self.backend == 'chromadb':
                self._reset_collection()
                if ids:
                    self.collection.add(
                        ids=list(ids),
                        embeddings=[vector.tolist() for vector in vectors]
                    )

        logger.info(f"Descriptor index rebuilt with {len(ids)} members")
        return len(ids)

    def add(self, member_id: str, descriptor: np.ndarray):
        """Add or replace a single member descriptor."""
        if descriptor is None:
            raise ValueError("Invalid descriptor")

        descriptor = np.asarray(descriptor, dtype=np.float32).ravel()
        with self._lock:
            if self.descriptor_size is None:
                self.descriptor_size = descriptor.size
            elif descriptor.size != self.descriptor_size:
                raise ValueError(f"Descriptor size {descriptor.size} != index size {self.descriptor_size}")

            self._remove_locked(member_id)
            self.ids.append(member_id)
            self.vectors.append(descriptor)

            if self.backend == 'chromadb':
                self.collection.add(ids=[member_id], embeddings=[descriptor.tolist()])

    def remove(self, member_id: str) -> bool:
        with self._lock:
            return self._remove_locked(member_id)

    def _remove_locked(self, member_id: str) -> bool:
        if member_id not in self.ids:
            return False
        position = self.ids.index(member_id)
        del self.ids[position]
        del self.vectors[position]
        if self.backend == 'chromadb':
            self.collection.delete(ids=[member_id])
        return True

    def search(self, descriptor: np.ndarray, k: int = 5) -> List[Dict[str, Any]]:
        """
        Find the k nearest members.

        Args:
            descriptor: Query descriptor
            k: Number of neighbours

        Returns:
            List of {'id', 'distance', 'similarity'} sorted by distance
        """
        if descriptor is None:
            return []

        query = np.asarray(descriptor, dtype=np.float32).ravel()
        with self._lock:
            if not self.ids:
                return []
            if query.size != self.descriptor_size:
                logger.error(f"Query descriptor size mismatch: {query.size} vs {self.descriptor_size}")
                return []

            k = min(k, len(self.ids))
            if self.backend == 'chromadb':
                results = self._search_chromadb(query, k)
            else:
                results = self._search_linear(query, k)

        results.sort(key=lambda result: result['distance'])
        return results

    def _search_chromadb(self, query: np.ndarray, k: int) -> List[Dict[str, Any]]:
        try:
            response = self.collection.query(query_embeddings=[query.tolist()], n_results=k)
        except Exception as e:
            logger.error(f"ChromaDB search failed: {e}")
            return []

        results = []
        for member_id, squared in zip(response['ids'][0], response['distances'][0]):
            # Chroma's l2 space reports squared distances
            distance = float(np.sqrt(max(squared, 0.0)))
            results.append({'id': member_id, 'distance': distance,
                            'similarity': distance_to_similarity(distance)})
        return results

    def _search_linear(self, query: np.ndarray, k: int) -> List[Dict[str, Any]]:
        distances = euclidean_distances([query], np.vstack(self.vectors))[0]
        results = []
        for position in np.argsort(distances)[:k]:
            distance = float(distances[position])
            results.append({'id': self.ids[position], 'distance': distance,
                            'similarity': distance_to_similarity(distance)})
        return results
