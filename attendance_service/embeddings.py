import json
import logging
import numpy as np
from typing import Iterable, Optional, Sequence, Union

from attendance_service.exceptions import InvalidEmbeddingError, MalformedEmbeddingError
from attendance_service.models import MatchResult, Student

logger = logging.getLogger(__name__)

def serialize_embedding(vector: Sequence[float]) -> str:
    """Encode an embedding as the JSON text stored in ``face_embedding``."""
    return json.dumps([float(x) for x in vector])

def parse_embedding(raw: Union[str, Sequence[float], None], dimension: int) -> np.ndarray:
    """
    Decode a stored embedding into a float vector of the expected length.

    Accepts the JSON text kept in Firestore or an already decoded list.
    Raises MalformedEmbeddingError for anything that cannot be compared.
    """
    if raw is None:
        raise MalformedEmbeddingError("Embedding is missing")

    data = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedEmbeddingError(f"Embedding is not valid JSON: {e}") from e

    if isinstance(data, dict) or not isinstance(data, (list, tuple, np.ndarray)):
        raise MalformedEmbeddingError(f"Embedding must be an array, got {type(data).__name__}")

    try:
        vector = np.asarray(data, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise MalformedEmbeddingError(f"Embedding has non-numeric values: {e}") from e

    if vector.ndim != 1 or vector.shape[0] != dimension:
        raise MalformedEmbeddingError(
            f"Embedding has shape {vector.shape}, expected ({dimension},)"
        )
    if not np.all(np.isfinite(vector)):
        raise MalformedEmbeddingError("Embedding contains NaN or infinite values")
    return vector

def validate_query_embedding(embedding: Sequence[float], dimension: int) -> np.ndarray:
    """Same checks as parse_embedding, for vectors submitted by a client."""
    try:
        return parse_embedding(list(embedding), dimension)
    except MalformedEmbeddingError as e:
        raise InvalidEmbeddingError(str(e)) from e

def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Calculate Euclidean distance between two embeddings."""
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))

def find_best_match(
    query: Sequence[float],
    students: Iterable[Student],
    threshold: float,
    dimension: Optional[int] = None,
) -> Optional[MatchResult]:
    """
    Return the enrolled student closest to ``query``, or None.

    A candidate is accepted only when its distance is strictly below
    ``threshold``. Students without an embedding are ignored and students
    whose stored embedding cannot be parsed are logged and skipped.

    Ties: the first student in iteration order holding the minimum
    distance wins; a later candidate must be strictly closer to replace it.
    """
    query_vector = np.asarray(query, dtype=np.float64)
    dimension = dimension or query_vector.shape[0]

    best: Optional[MatchResult] = None
    compared = 0

    for student in students:
        if not student.face_embedding:
            continue

        try:
            stored = parse_embedding(student.face_embedding, dimension)
        except MalformedEmbeddingError as e:
            logger.warning("Skipping student %s (%s): %s", student.id, student.name, e)
            continue

        compared += 1
        distance = euclidean_distance(query_vector, stored)
        logger.debug("%s: distance = %.3f (threshold: %s)", student.name, distance, threshold)

        if distance < threshold and (best is None or distance < best.distance):
            best = MatchResult(student=student, distance=distance)

    if best is None:
        logger.info("No match among %d enrolled embeddings (threshold: %s)", compared, threshold)
    else:
        logger.info("Match found: %s (distance: %.3f)", best.student.name, best.distance)
    return best
