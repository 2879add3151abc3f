"""YAML protocol loader with integrity verification."""

import hashlib
from pathlib import Path
from typing import Any

import yaml

from toc_orchestrator.core.config import PROTOCOLS_DIR


def compute_protocol_hash(content: str) -> str:
    """Compute SHA256 hash of protocol document content.

    Stored on outreach plans and responses so the audit trail shows exactly
    which document version drove a decision.

    Args:
        content: Raw YAML content string

    Returns:
        SHA256 hex digest
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def load_protocol(
    filename: str,
    protocols_dir: Path | None = None,
) -> tuple[dict[str, Any], str]:
    """Load a protocol YAML file and compute its hash.

    Args:
        filename: Name of the file (e.g., "toc-content-pack-v1.0.0.yaml")
        protocols_dir: Directory containing protocol documents

    Returns:
        Tuple of (parsed document dict, SHA256 hash)

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    if protocols_dir is None:
        protocols_dir = PROTOCOLS_DIR

    filepath = Path(protocols_dir) / filename

    if not filepath.exists():
        raise FileNotFoundError(f"Protocol document not found: {filepath}")

    content = filepath.read_text(encoding="utf-8")
    document_hash = compute_protocol_hash(content)
    document = yaml.safe_load(content)

    return document, document_hash


class ProtocolLoader:
    """Stateful protocol loader with caching."""

    def __init__(self, protocols_dir: Path | None = None) -> None:
        self.protocols_dir = Path(protocols_dir or PROTOCOLS_DIR)
        self._cache: dict[str, tuple[dict[str, Any], str]] = {}

    def load(self, filename: str, use_cache: bool = True) -> tuple[dict[str, Any], str]:
        """Load a document with optional caching."""
        if use_cache and filename in self._cache:
            return self._cache[filename]

        document, document_hash = load_protocol(filename, self.protocols_dir)
        self._cache[filename] = (document, document_hash)

        return document, document_hash

    def clear_cache(self) -> None:
        """Clear the document cache."""
        self._cache.clear()

    def list_documents(self) -> list[str]:
        """List available protocol files."""
        return sorted(f.name for f in self.protocols_dir.glob("*.yaml"))

    def get_document_info(self, filename: str) -> dict[str, Any]:
        """Get metadata about a protocol document.

        Returns:
            Dict with id, version, description, hash
        """
        document, document_hash = self.load(filename)

        return {
            "filename": filename,
            "id": document.get("id", "unknown"),
            "version": document.get("version", "unknown"),
            "description": document.get("description", ""),
            "hash": document_hash,
        }
