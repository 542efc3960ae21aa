import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from supabase import create_client

from docrecon.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredDocument:
    """Addressing handed over by the upload side: where the file is and what it is."""

    file_path: str
    file_type: str


def file_type_from_name(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return Path(filename).suffix.lower().lstrip(".")


def get_storage_client():
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("Supabase storage credentials are not configured")
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def download_document(document: StoredDocument, *, bucket: Optional[str] = None) -> bytes:
    """Fetch the raw bytes of an uploaded document from the storage bucket."""
    settings = get_settings()
    bucket_name = bucket or settings.storage_bucket
    client = get_storage_client()
    content = client.storage.from_(bucket_name).download(document.file_path)
    if not content:
        raise FileNotFoundError(f"Empty download for {bucket_name}/{document.file_path}")
    logger.debug("Downloaded %s/%s (%s bytes)", bucket_name, document.file_path, len(content))
    return content
