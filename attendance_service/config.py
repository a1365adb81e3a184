from typing import List
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # App Settings
    APP_NAME: str = "Face Attendance Service"
    API_V1_STR: str = "/api/v1"
    CORS_ORIGINS: List[str] = ["*"]

    # Face Recognition Settings
    RECOGNITION_THRESHOLD: float = 0.45  # Euclidean distance, strict upper bound
    EMBEDDING_DIMENSION: int = 128
    MODEL_NAME: str = "Facenet"  # 128-d embeddings
    DETECTOR_BACKEND: str = "opencv"

    # Attendance Settings
    TIMEZONE: str = "UTC"  # calendar day used for the one-record-per-day rule
    DEVICE_ID_MAX_LENGTH: int = 50
    KIOSK_SESSION_TTL: int = 3600  # seconds

    # Firebase Settings
    FIREBASE_CREDENTIALS_PATH: str = ""
    FIREBASE_STORAGE_BUCKET: str = ""
    FIREBASE_WEB_API_KEY: str = ""  # Identity Toolkit key used for password sign-in
    FACE_IMAGES_PREFIX: str = "face-images"

    class Config:
        case_sensitive = True
        env_file = ".env"

settings = Settings()
