"""
InsightFace initialization module.

Provides face detection and embedding extraction using InsightFace models.
"""

from typing import Any, List

from insightface.app import FaceAnalysis

from .config import Config
from .errors import ExtractionError
from .logging_config import get_logger
from .models import DetectedFace
from .recognition.preprocessing import decode_image, resize_to_width

logger = get_logger(__name__)


def initialize_face_app(config: Config) -> FaceAnalysis:
    """
    Initialize InsightFace FaceAnalysis.

    Args:
        config: Service configuration

    Returns:
        Initialized FaceAnalysis instance
    """
    logger.info(f'Initializing InsightFace ({config.insightface_model})...')

    face_app = FaceAnalysis(
        name=config.insightface_model,
        allowed_modules=['detection', 'recognition'],
        providers=['CPUExecutionProvider'],
    )
    face_app.prepare(ctx_id=0, det_size=config.insightface_det_size)

    logger.info(f'✅ InsightFace initialized (det_size={config.insightface_det_size})')

    return face_app


class InsightFaceExtractor:
    """
    Embedding extractor backed by InsightFace.

    Embeddings are the L2-normalised vectors (normed_embedding), so Euclidean
    distances fall in [0, 2] and the default 0.6 threshold is meaningful.
    """

    def __init__(self, face_app: Any, config: Config):
        """
        Args:
            face_app: Prepared FaceAnalysis instance
            config: Service configuration
        """
        self.face_app = face_app
        self.config = config

    def extract(self, image: bytes, single: bool = False) -> List[DetectedFace]:
        """
        Detect faces and compute their embeddings.

        Args:
            image: Encoded image bytes
            single: Return at most the best face (enrollment photos are also
                downscaled to config.resize_width in this mode)

        Returns:
            Detected faces ordered by detection score, best first

        Raises:
            ExtractionError: If the image cannot be decoded or the model fails
        """
        frame = decode_image(image)
        if single:
            frame = resize_to_width(frame, self.config.resize_width)

        try:
            faces = self.face_app.get(frame)
        except Exception as e:
            raise ExtractionError(f'face model failed: {e}') from e

        detected = [
            DetectedFace(
                embedding=face.normed_embedding,
                bbox=tuple(float(v) for v in face.bbox),
                det_score=float(face.det_score),
                landmarks=face.kps.tolist() if getattr(face, 'kps', None) is not None else None,
            )
            for face in faces
        ]
        detected.sort(key=lambda f: f.det_score, reverse=True)

        if single:
            return detected[:1]
        return detected
