from datetime import datetime
from pathlib import Path
from werkzeug.utils import secure_filename
from crowdfund.errors import AppError, ErrorCode
import logging
import shutil
import uuid

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {'jpg', 'jpeg', 'png', 'gif', 'webp'}


class StorageBackend:
    """Persists uploaded content under a caller supplied relative path."""

    def upload_file(self, stream, relative_path: str) -> str:
        raise NotImplementedError

    def public_url(self, reference: str) -> str:
        raise NotImplementedError


class LocalStorage(StorageBackend):

    def __init__(self, root, base_url=''):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip('/')
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, relative_path: str) -> Path:
        target = (self.root / relative_path).resolve()
        if target != self.root and self.root not in target.parents:
            raise AppError(ErrorCode.VALIDATION, 'invalid storage path')
        return target

    def upload_file(self, stream, relative_path: str) -> str:
        target = self.resolve(relative_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'wb') as fh:
                shutil.copyfileobj(stream, fh)
        except OSError as e:
            logger.error("Failed to store %s: %s", relative_path, e)
            # Drop the partial write.
            if target.is_file():
                target.unlink()
            raise AppError(ErrorCode.DATABASE, 'storage backend failure', e)
        reference = target.relative_to(self.root).as_posix()
        logger.info("Stored file %s", reference)
        return reference

    def public_url(self, reference: str) -> str:
        return f'{self.base_url}/uploads/{reference}'


def build_upload_path(folder, owner_id, filename):
    """``<folder>/<owner>/<yyyymmdd>/<uuid>.<ext>`` for an image upload."""
    name = secure_filename(filename or '')
    ext = name.rsplit('.', 1)[-1].lower() if '.' in name else ''
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise AppError(
            ErrorCode.VALIDATION,
            'unsupported image type, allowed: '
            + ', '.join(sorted(ALLOWED_IMAGE_EXTENSIONS)))
    day = datetime.utcnow().strftime('%Y%m%d')
    return f'{folder}/{owner_id}/{day}/{uuid.uuid4().hex}.{ext}'


def save_image(storage, file, folder, owner_id):
    """Store a werkzeug FileStorage and return its public URL."""
    if file is None or not file.filename:
        raise AppError(ErrorCode.VALIDATION, 'file is required')
    reference = storage.upload_file(
        file.stream, build_upload_path(folder, owner_id, file.filename))
    return storage.public_url(reference)
