"""Durable backends for training examples and learned patterns.

Both backends read and replace the whole corpus as one JSON document;
the store serializes writers with a lock.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from minio.error import S3Error
from pydantic import ValidationError

from docparse.learning.models import TrainingData
from docparse.shared.config import Settings
from docparse.shared.errors import PatternStoreError
from docparse.storage.service import StorageService

logger = logging.getLogger(__name__)


class TrainingBackend(Protocol):
    """Load and save the complete training corpus."""

    def load(self) -> TrainingData: ...

    def save(self, data: TrainingData) -> None: ...


class JsonFileBackend:
    """Training corpus in a local JSON file, replaced atomically on save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> TrainingData:
        if not self.path.exists():
            return TrainingData()
        try:
            return TrainingData.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise PatternStoreError(
                f"Failed to read training data from {self.path}", {"error": str(e)}
            ) from e

    def save(self, data: TrainingData) -> None:
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data.model_dump_json(indent=2))
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise PatternStoreError(
                f"Failed to write training data to {self.path}", {"error": str(e)}
            ) from e


class ObjectStorageBackend:
    """Training corpus as one JSON object in MinIO."""

    def __init__(self, storage: StorageService, object_name: str) -> None:
        self.storage = storage
        self.object_name = object_name

    def load(self) -> TrainingData:
        try:
            payload = self.storage.get_json(self.object_name)
        except (S3Error, ValueError) as e:
            raise PatternStoreError(
                f"Failed to read training data object {self.object_name}", {"error": str(e)}
            ) from e
        if payload is None:
            return TrainingData()
        try:
            return TrainingData.model_validate_json(payload)
        except ValidationError as e:
            raise PatternStoreError(
                f"Corrupt training data object {self.object_name}", {"error": str(e)}
            ) from e

    def save(self, data: TrainingData) -> None:
        result = self.storage.put_json(self.object_name, data.model_dump_json())
        if not result.success:
            raise PatternStoreError(
                f"Failed to write training data object {self.object_name}",
                {"error": result.error},
            )


def create_training_backend(settings: Settings) -> TrainingBackend:
    """Build the backend selected by settings.training_store_backend."""
    if settings.training_store_backend == "minio":
        logger.info(f"Using MinIO training backend: {settings.training_store_object}")
        return ObjectStorageBackend(StorageService(settings), settings.training_store_object)
    logger.info(f"Using file training backend: {settings.training_store_path}")
    return JsonFileBackend(settings.training_store_path)
