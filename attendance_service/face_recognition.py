import base64
import binascii
import numpy as np
from typing import List, Optional, Sequence
from io import BytesIO
from PIL import Image, UnidentifiedImageError
from attendance_service.config import settings
from attendance_service.embeddings import find_best_match, validate_query_embedding
from attendance_service.exceptions import FaceNotDetectedError
from attendance_service.models import MatchResult, Student
import logging

logger = logging.getLogger(__name__)

class FaceRecognizer:
    def __init__(
        self,
        model_name: str = settings.MODEL_NAME,
        detector_backend: str = settings.DETECTOR_BACKEND,
        threshold: float = settings.RECOGNITION_THRESHOLD,
        dimension: int = settings.EMBEDDING_DIMENSION,
    ):
        self.model_name = model_name
        self.detector_backend = detector_backend
        self.threshold = threshold
        self.dimension = dimension

    @staticmethod
    def decode_base64(base64_string: str) -> bytes:
        """Raw bytes of a base64 string, with or without a data URL prefix."""
        if "," in base64_string:
            base64_string = base64_string.split(",", 1)[1]
        try:
            return base64.b64decode(base64_string, validate=True)
        except (binascii.Error, ValueError) as e:
            raise FaceNotDetectedError(f"Image could not be decoded: {e}") from e

    @classmethod
    def base64_to_image(cls, base64_string: str) -> np.ndarray:
        """Convert base64 string (optionally a data URL) to an RGB numpy array."""
        image_data = cls.decode_base64(base64_string)
        try:
            image = Image.open(BytesIO(image_data))
            image.load()
        except (OSError, UnidentifiedImageError) as e:
            raise FaceNotDetectedError(f"Image could not be decoded: {e}") from e

        # DeepFace expects RGB/BGR
        if image.mode != "RGB":
            image = image.convert("RGB")

        return np.array(image)

    def extract_embedding(self, image_input) -> Optional[List[float]]:
        """Extract face embedding using DeepFace. Returns None when no face is found."""
        # deepface pulls in tensorflow; load it on first use
        from deepface import DeepFace

        try:
            # DeepFace.represent returns a list of dicts
            embedding_objs = DeepFace.represent(
                img_path=image_input,
                model_name=self.model_name,
                enforce_detection=True,
                detector_backend=self.detector_backend
            )
        except ValueError as e:
            # Face could not be detected
            logger.warning("Face detection failed: %s", e)
            return None

        if not embedding_objs:
            logger.warning("No face detected")
            return None

        # Most prominent face first
        return [float(x) for x in embedding_objs[0]["embedding"]]

    def embedding_from_base64(self, base64_string: str) -> List[float]:
        """Decode a captured frame and return its embedding, or raise FaceNotDetectedError."""
        image = self.base64_to_image(base64_string)
        embedding = self.extract_embedding(image)
        if embedding is None:
            raise FaceNotDetectedError("No face detected in the image")
        validate_query_embedding(embedding, self.dimension)
        return embedding

    def recognize(self, embedding: Sequence[float], students: List[Student]) -> Optional[MatchResult]:
        """Compare a captured embedding with every enrolled student."""
        query = validate_query_embedding(embedding, self.dimension)
        logger.info("Comparing with %d students...", len(students))
        return find_best_match(query, students, self.threshold, self.dimension)
