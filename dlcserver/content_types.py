"""Extension -> (MIME type, compressible) lookup."""

import os
from typing import Tuple

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    '.html': 'text/html',
    '.htm': 'text/html',
    '.css': 'text/css',
    '.js': 'application/javascript',
    '.json': 'application/json',
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.gif': 'image/gif',
    '.svg': 'image/svg+xml',
    '.pdf': 'application/pdf',
    '.zip': 'application/zip',
    '.txt': 'text/plain',
    '.xml': 'application/xml',
}

# Text formats only; images, PDFs and archives are already compressed
COMPRESSIBLE_EXTENSIONS = frozenset({
    '.html', '.htm', '.css', '.js', '.json', '.txt', '.xml', '.svg',
})


def classify(path: str) -> Tuple[str, bool]:
    """Return (content_type, is_compressible) for a file path."""
    ext = os.path.splitext(path)[1].lower()
    return CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE), ext in COMPRESSIBLE_EXTENSIONS
