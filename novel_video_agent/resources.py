"""
Resource ledger.

Every binary the pipeline touches, whether an uploaded novel or a generated
audio clip, image, caption track or video, is recorded here as metadata
pointing into the blob store.
"""

import mimetypes
from datetime import datetime
from typing import Any, Dict, List, Optional

from novel_video_agent.db_manager import new_id
from novel_video_agent.errors import NotFoundError, TransientProviderError
from novel_video_agent.storage import BlobStore
from novel_video_agent.store import RecordStore
from novel_video_agent.utils.file_utils import split_extension
from novel_video_agent.utils.logger import get_logger
from novel_video_agent.utils.validation import require_text

logger = get_logger(__name__)


def build_storage_key(user_id: str, resource_id: str, ext: str,
                      when: Optional[datetime] = None) -> str:
    """Build the blob key for a resource.

    Format: <user>/<yyyy>/<mm>/<dd>/<resource_id>.<ext>

    Examples:
        >>> build_storage_key("u1", "abc", "txt", datetime(2025, 3, 7))
        'u1/2025/03/07/abc.txt'
    """
    when = when or datetime.now()
    name = f"{resource_id}.{ext}" if ext else resource_id
    return f"{user_id}/{when:%Y}/{when:%m}/{when:%d}/{name}"


def upload_resource(store: RecordStore, blobs: BlobStore, user_id: str, name: str,
                    data: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
    """Record a resource and store its bytes.

    The record is created pending, then moved to ready once the blob is
    stored, or to failed with the error message if the upload fails.

    Args:
        store: Record store.
        blobs: Blob store.
        user_id: Owner of the resource.
        name: Original filename (used for the extension).
        data: File contents.
        content_type: MIME type; guessed from name when omitted.

    Returns:
        The ready resource record.

    Raises:
        TransientProviderError: If the blob store fails with an I/O error.
    """
    require_text(user_id, "user_id")
    require_text(name, "name")

    resource_id = new_id()
    ext = split_extension(name)
    content_type = content_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
    storage_key = build_storage_key(user_id, resource_id, ext)

    store.insert("resources", {
        "id": resource_id,
        "user_id": user_id,
        "name": name,
        "ext": ext,
        "file_size": len(data),
        "content_type": content_type,
        "storage_key": storage_key,
        "storage_type": blobs.storage_type,
        "status": "pending",
    })

    try:
        blobs.upload(storage_key, data, content_type)
    except OSError as e:
        logger.error(f"[RESOURCE] Upload of {name} failed: {e}")
        store.transition("resources", resource_id, "failed", error_message=str(e))
        raise TransientProviderError("storage", str(e))
    except Exception as e:
        store.transition("resources", resource_id, "failed", error_message=str(e))
        raise

    record = store.transition("resources", resource_id, "ready")
    logger.info(f"[RESOURCE] Stored {name} ({len(data)} bytes) as {storage_key}")
    return record


def get_resource(store: RecordStore, resource_id: str) -> Dict[str, Any]:
    return store.require("resources", resource_id)


def list_resources(store: RecordStore, user_id: str) -> List[Dict[str, Any]]:
    return store.find("resources", user_id=user_id, order_by="created_at")


def open_resource(store: RecordStore, blobs: BlobStore, resource_id: str) -> bytes:
    """Return the bytes of a ready resource."""
    resource = get_resource(store, resource_id)
    if resource["status"] != "ready":
        raise NotFoundError(f"Resource {resource_id} is {resource['status']}, not ready")
    return blobs.download(resource["storage_key"])


def resource_download_url(store: RecordStore, blobs: BlobStore, resource_id: str,
                          ttl_seconds: Optional[int] = None) -> str:
    resource = get_resource(store, resource_id)
    return blobs.presign_download(resource["storage_key"], ttl_seconds)


def delete_resource(store: RecordStore, blobs: BlobStore, resource_id: str) -> bool:
    """Tombstone a resource and remove its blob.

    Returns:
        False if the resource was already deleted.
    """
    resource = store.get("resources", resource_id)
    if resource is None:
        return False
    deleted = store.tombstone("resources", resource_id)
    blobs.delete(resource["storage_key"])
    logger.info(f"[RESOURCE] Deleted {resource_id}")
    return deleted
