"""
Compute face embeddings for students enrolled without one.

Students whose enrollment photo is in Cloud Storage but whose
``face_embedding`` is missing or unreadable are re-analysed and updated in
place, so they become recognisable at the kiosk.

Usage:
    backfill-embeddings [--class CLASS_ID] [--force] [--dry-run]

Options:
    --class CLASS_ID  Only process students from one class
    --force           Recompute embeddings that already parse correctly
    --dry-run         Report what would change without writing
"""

import argparse
import logging
from io import BytesIO
from typing import Dict, Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

from attendance_service.config import settings
from attendance_service.embeddings import parse_embedding, serialize_embedding
from attendance_service.exceptions import BackendError, MalformedEmbeddingError
from attendance_service.face_recognition import FaceRecognizer
from attendance_service.firebase_service import FirebaseService

logger = logging.getLogger(__name__)


def needs_embedding(raw, dimension: int) -> bool:
    if not raw:
        return True
    try:
        parse_embedding(raw, dimension)
    except MalformedEmbeddingError:
        return True
    return False


def backfill_embeddings(backend: FirebaseService, recognizer: FaceRecognizer,
                        class_id: Optional[str] = None, force: bool = False,
                        dry_run: bool = False) -> Dict[str, int]:
    """Main function; returns counters keyed updated/skipped/failed/total."""
    students = backend.list_students()
    if class_id:
        students = [s for s in students if s.class_id == class_id]
    logger.info("Found %d students to check", len(students))

    counts = {"updated": 0, "skipped": 0, "failed": 0, "total": len(students)}

    for i, student in enumerate(students, 1):
        prefix = f"[{i}/{len(students)}] {student.name} ({student.id})"

        if not force and not needs_embedding(student.face_embedding, recognizer.dimension):
            logger.debug("%s: embedding present, skipping", prefix)
            counts["skipped"] += 1
            continue

        if not student.photo_path:
            logger.warning("%s: no enrollment photo available", prefix)
            counts["failed"] += 1
            continue

        try:
            image = Image.open(BytesIO(backend.download_face_image(student.photo_path))).convert("RGB")
            embedding = recognizer.extract_embedding(np.array(image))
        except (BackendError, OSError, UnidentifiedImageError) as e:
            logger.error("%s: %s", prefix, e)
            counts["failed"] += 1
            continue

        if embedding is None:
            logger.warning("%s: no face detected in %s", prefix, student.photo_path)
            counts["failed"] += 1
            continue

        if dry_run:
            logger.info("%s: would update embedding", prefix)
        else:
            try:
                backend.update_student(student.id, {"face_embedding": serialize_embedding(embedding)})
            except BackendError as e:
                logger.error("%s: %s", prefix, e)
                counts["failed"] += 1
                continue
            logger.info("%s: embedding updated", prefix)
        counts["updated"] += 1

    logger.info(
        "Backfill complete: %(updated)d updated, %(skipped)d skipped, %(failed)d failed, %(total)d total",
        counts,
    )
    return counts


def main(argv=None):
    """Parse arguments and run the backfill."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(
        description="Compute missing student face embeddings from enrollment photos"
    )
    parser.add_argument('--class', dest='class_id', type=str,
                        help='Only process students from one class id')
    parser.add_argument('--force', action='store_true',
                        help='Recompute embeddings that already exist')
    parser.add_argument('--dry-run', action='store_true',
                        help='Do not write anything')
    args = parser.parse_args(argv)

    if not settings.FIREBASE_STORAGE_BUCKET:
        parser.error("FIREBASE_STORAGE_BUCKET must be set to read enrollment photos")

    counts = backfill_embeddings(FirebaseService(), FaceRecognizer(),
                                 class_id=args.class_id, force=args.force, dry_run=args.dry_run)
    return 1 if counts["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
