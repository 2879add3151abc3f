"""Versioned protocol documents: outreach templates and content packs.

Documents are YAML files loaded read-only with a SHA-256 hash recorded on
every decision they drive.
"""

from functools import lru_cache
from pathlib import Path

from toc_orchestrator.core.config import settings
from toc_orchestrator.core.errors import ConfigurationError
from toc_orchestrator.rules.loader import ProtocolLoader, compute_protocol_hash, load_protocol
from toc_orchestrator.rules.matcher import (
    extract_number,
    match_reply,
    normalize_text,
    payload_text,
)
from toc_orchestrator.rules.models import (
    ContentPack,
    NumericFollowUp,
    OutreachTemplate,
    ProtocolRule,
    TemplateCatalog,
)


@lru_cache(maxsize=8)
def _loader(protocols_dir: str) -> ProtocolLoader:
    return ProtocolLoader(Path(protocols_dir))


def load_content_pack(filename: str | None = None, protocols_dir: Path | None = None) -> ContentPack:
    """Load the active content pack (or a named one)."""
    filename = filename or settings.active_content_pack
    loader = _loader(str(protocols_dir or settings.protocols_dir))
    try:
        document, document_hash = loader.load(filename)
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e
    return ContentPack.from_dict(document, content_hash=document_hash)


def load_template_catalog(filename: str | None = None, protocols_dir: Path | None = None) -> TemplateCatalog:
    """Load the outreach template catalog."""
    filename = filename or settings.outreach_templates_file
    loader = _loader(str(protocols_dir or settings.protocols_dir))
    try:
        document, document_hash = loader.load(filename)
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e
    return TemplateCatalog.from_dict(document, content_hash=document_hash)


__all__ = [
    "ProtocolLoader",
    "load_protocol",
    "compute_protocol_hash",
    "ContentPack",
    "NumericFollowUp",
    "OutreachTemplate",
    "ProtocolRule",
    "TemplateCatalog",
    "match_reply",
    "normalize_text",
    "payload_text",
    "extract_number",
    "load_content_pack",
    "load_template_catalog",
]
