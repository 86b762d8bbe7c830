import os
import uuid
from datetime import datetime
from typing import Dict, Optional, BinaryIO
from werkzeug.utils import secure_filename

TEXT_EXTENSIONS = {'.txt', '.md', '.csv', '.json', '.html', '.htm', '.xml', '.eml', '.rtf'}
MAX_INDEXED_CHARS = 200000


class DocumentService:
    """Stores uploaded documents on disk, one folder per firm and case."""

    def __init__(self, base_upload_folder: str = None):
        """
        Args:
            base_upload_folder: Base directory for storing uploaded files.
                              Defaults to UPLOAD_FOLDER, else 'uploads' next to this module.
        """
        self.base_upload_folder = base_upload_folder or os.getenv('UPLOAD_FOLDER') or os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'uploads'
        )

    def _ensure_directory_exists(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    def _get_folder(self, firm_id: int, case_id: Optional[int]) -> str:
        return os.path.join(self.base_upload_folder, str(firm_id), str(case_id) if case_id else 'general')

    def save_document(
        self,
        file_stream: BinaryIO,
        filename: str,
        firm_id: int,
        case_id: Optional[int] = None,
    ) -> Dict:
        """
        Save an uploaded document under a unique name.

        Returns a dict with the stored path, size, type and (for text
        formats) the extracted content used by document search.
        """
        original_filename = secure_filename(filename) or 'upload'
        file_ext = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid.uuid4().hex}{file_ext}"

        folder = self._get_folder(firm_id, case_id)
        self._ensure_directory_exists(folder)

        file_path = os.path.join(folder, unique_filename)
        with open(file_path, 'wb') as f:
            chunk_size = 4096
            while True:
                chunk = file_stream.read(chunk_size)
                if not chunk:
                    break
                f.write(chunk)

        return {
            'original_filename': original_filename,
            'stored_filename': unique_filename,
            'file_path': file_path,
            'file_size': os.stat(file_path).st_size,
            'file_type': file_ext.lstrip('.').upper() or 'BIN',
            'content': self.extract_text(file_path),
            'uploaded_at': datetime.utcnow(),
        }

    def extract_text(self, file_path: str) -> Optional[str]:
        """Read text content for plain-text formats; binary formats return None."""
        if os.path.splitext(file_path)[1].lower() not in TEXT_EXTENSIONS:
            return None
        try:
            with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
                return f.read(MAX_INDEXED_CHARS)
        except OSError:
            return None

    def delete_document(self, file_path: Optional[str]) -> bool:
        """Remove a stored file; only paths inside the upload folder are touched."""
        if not file_path or not os.path.exists(file_path):
            return False
        base = os.path.abspath(self.base_upload_folder)
        if os.path.commonpath([base, os.path.abspath(file_path)]) != base:
            return False
        try:
            os.remove(file_path)
            return True
        except OSError:
            return False


document_service = DocumentService(os.getenv('UPLOAD_FOLDER'))
