"""Content Normalizer for the RAG Knowledge Base

Turns raw, source-specific ingestion content into plain text plus enriched
metadata. Structured payloads (products, ERP records, e-mails) are rendered as
labelled "Field: value" sections so they embed and read well in prompts.
This module performs no I/O.
"""

from typing import Any, Callable, Dict, List
import hashlib
import html
import math
import re

import structlog
from pydantic import ValidationError as PydanticValidationError

from knowledge_rag.config.settings import get_settings
from knowledge_rag.core.exceptions import ValidationError
from knowledge_rag.rag.chunker import count_tokens
from knowledge_rag.rag.models import (
    PAYLOAD_TYPES,
    DocumentPayload,
    EmailArchivePayload,
    ErpRecordPayload,
    IngestContent,
    ManualPayload,
    NormalizedContent,
    ProductPayload,
    SourcePayload,
    SourceType,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6]|/table|/ul|/ol)\b[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_HTML_HINT_RE = re.compile(r"</?(html|body|p|div|br|span|table|ul|ol|li|h[1-6]|a|b|i|strong|em)\b", re.IGNORECASE)
_MD_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE)
_MD_EMPHASIS_RE = re.compile(r"(\*\*|__|\*|`)(?=\S)(.+?)(?<=\S)\1")
_MD_LINK_RE = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
_KEYWORD_RE = re.compile(r"\b[a-zA-Z]{4,}\b")

_STOP_WORDS = {
    'about', 'above', 'after', 'again', 'against', 'their', 'them', 'then', 'there',
    'this', 'that', 'with', 'from', 'have', 'will', 'your', 'which', 'were', 'been',
    'into', 'when', 'what', 'where', 'also', 'these', 'those', 'other', 'than',
}


def strip_html(text: str) -> str:
    """Remove HTML markup, keeping block boundaries as line breaks."""
    text = _SCRIPT_STYLE_RE.sub(" ", text)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = _TAG_RE.sub(" ", text)
    return html.unescape(text)


def strip_markdown(text: str) -> str:
    """Remove heading markers, emphasis and link syntax from markdown."""
    text = _MD_LINK_RE.sub(r"\1", text)
    text = _MD_HEADING_RE.sub("", text)
    return _MD_EMPHASIS_RE.sub(r"\2", text)


def clean_whitespace(text: str) -> str:
    """Normalize line endings, collapse blank runs and trim."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _strip_markup(text: str, mime_type: str = "text/plain") -> str:
    if mime_type == "text/html" or _HTML_HINT_RE.search(text):
        text = strip_html(text)
    if mime_type == "text/markdown":
        text = strip_markdown(text)
    return text


def _humanize(key: str) -> str:
    return key.replace("_", " ").strip().capitalize()


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return ", ".join(f"{k}: {v}" for k, v in value.items())
    return str(value)


# Payload construction from plain-string content

def _document_from_text(content: IngestContent) -> DocumentPayload:
    return DocumentPayload(
        text=content.content,
        mime_type=content.metadata.get("mime_type", "text/plain"),
    )


def _manual_from_text(content: IngestContent) -> ManualPayload:
    return ManualPayload(
        text=content.content,
        product_model=content.metadata.get("product_model"),
        version=content.metadata.get("version"),
        mime_type=content.metadata.get("mime_type", "text/plain"),
    )


def _product_from_text(content: IngestContent) -> ProductPayload:
    metadata = content.metadata
    return ProductPayload(
        name=content.title,
        description=content.content,
        sku=metadata.get("sku"),
        category=metadata.get("category"),
        specifications=metadata.get("specifications") or {},
        attributes=metadata.get("attributes") or {},
    )


def _erp_record_from_text(content: IngestContent) -> ErpRecordPayload:
    metadata = content.metadata
    return ErpRecordPayload(
        entity_type=metadata.get("entity_type", "record"),
        reference=metadata.get("reference"),
        fields=metadata.get("fields") or {},
        notes=content.content,
    )


def _email_from_text(content: IngestContent) -> EmailArchivePayload:
    metadata = content.metadata
    return EmailArchivePayload(
        subject=content.title,
        sender=metadata.get("sender", ""),
        recipients=metadata.get("recipients") or [],
        body=content.content,
        is_html=bool(metadata.get("is_html", False)),
    )


_FROM_TEXT: Dict[SourceType, Callable[[IngestContent], SourcePayload]] = {
    SourceType.DOCUMENT: _document_from_text,
    SourceType.MANUAL: _manual_from_text,
    SourceType.PRODUCT: _product_from_text,
    SourceType.ERP_RECORD: _erp_record_from_text,
    SourceType.EMAIL_ARCHIVE: _email_from_text,
}


# Rendering

def _render_document(payload: DocumentPayload) -> str:
    return _strip_markup(payload.text, payload.mime_type)


def _render_manual(payload: ManualPayload) -> str:
    header = []
    if payload.product_model:
        header.append(f"Model: {payload.product_model}")
    if payload.version:
        header.append(f"Version: {payload.version}")
    body = _strip_markup(payload.text, payload.mime_type)
    return "\n".join(header) + "\n\n" + body if header else body


def _render_product(payload: ProductPayload) -> str:
    lines = [f"Product: {payload.name}"]
    if payload.sku:
        lines.append(f"SKU: {payload.sku}")
    if payload.category:
        lines.append(f"Category: {payload.category}")
    if payload.price is not None:
        price = f"Price: {payload.price:.2f} {payload.currency}"
        if payload.unit:
            price += f" per {payload.unit}"
        lines.append(price)
    if payload.stock_quantity is not None:
        lines.append(f"Stock: {payload.stock_quantity:g}")

    sections = ["\n".join(lines)]
    if payload.description:
        sections.append(f"Description: {_strip_markup(payload.description)}")
    if payload.specifications:
        specs = "\n".join(f"{k}: {_format_value(v)}" for k, v in payload.specifications.items())
        sections.append(f"Specifications:\n{specs}")
    if payload.attributes:
        attrs = "\n".join(f"{k}: {_format_value(v)}" for k, v in payload.attributes.items())
        sections.append(f"Attributes:\n{attrs}")
    return "\n\n".join(sections)


def _render_erp_record(payload: ErpRecordPayload) -> str:
    heading = _humanize(payload.entity_type)
    lines = [f"{heading}: {payload.reference}" if payload.reference else heading]
    lines.extend(
        f"{_humanize(key)}: {_format_value(value)}"
        for key, value in payload.fields.items()
        if value not in (None, "")
    )

    sections = ["\n".join(lines)]
    if payload.items:
        item_lines = []
        for item in payload.items:
            name = item.get("name") or item.get("description") or item.get("sku") or "Item"
            details = []
            if item.get("quantity") is not None:
                details.append(f"Qty: {item['quantity']}")
            if item.get("price") is not None:
                details.append(f"Price: {item['price']}")
            item_lines.append(f"- {name} ({', '.join(details)})" if details else f"- {name}")
        sections.append("Items:\n" + "\n".join(item_lines))
    if payload.notes:
        sections.append(f"Notes: {_strip_markup(payload.notes)}")
    return "\n\n".join(sections)


def _render_email(payload: EmailArchivePayload) -> str:
    header = [f"Subject: {payload.subject}", f"From: {payload.sender}"]
    if payload.recipients:
        header.append(f"To: {', '.join(payload.recipients)}")
    if payload.sent_at:
        header.append(f"Date: {payload.sent_at.isoformat()}")
    body = strip_html(payload.body) if payload.is_html else _strip_markup(payload.body)
    return "\n".join(header) + "\n\n" + body


_RENDERERS: Dict[SourceType, Callable[[Any], str]] = {
    SourceType.DOCUMENT: _render_document,
    SourceType.MANUAL: _render_manual,
    SourceType.PRODUCT: _render_product,
    SourceType.ERP_RECORD: _render_erp_record,
    SourceType.EMAIL_ARCHIVE: _render_email,
}


# Body detection: headers alone (name, subject, reference) are not content

def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not clean_whitespace(value)
    if isinstance(value, (list, tuple, dict)):
        return all(_is_blank(v) for v in (value.values() if isinstance(value, dict) else value))
    return False


_BODY_FIELDS: Dict[SourceType, tuple] = {
    SourceType.DOCUMENT: ("text",),
    SourceType.MANUAL: ("text",),
    SourceType.PRODUCT: ("description", "specifications", "attributes"),
    SourceType.ERP_RECORD: ("fields", "items", "notes"),
    SourceType.EMAIL_ARCHIVE: ("body",),
}


def resolve_payload(content: IngestContent) -> SourcePayload:
    """Resolve raw ingestion content into the typed payload for its source type.

    Args:
        content: Raw ingestion content

    Returns:
        Validated payload variant

    Raises:
        ValidationError: If the content does not match the source type's schema
            or carries no body text
    """
    source_type = SourceType(content.source_type)
    try:
        if isinstance(content.content, str):
            payload = _FROM_TEXT[source_type](content)
        else:
            data = dict(content.content)
            data["source_type"] = source_type.value
            payload = PAYLOAD_TYPES[source_type].model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {source_type.value} payload",
            details={"source_type": source_type.value, "errors": e.errors(include_url=False)},
        )

    if all(_is_blank(getattr(payload, name)) for name in _BODY_FIELDS[source_type]):
        raise ValidationError(
            "Content must not be empty",
            details={
                "source_type": source_type.value,
                "source_id": content.source_id,
                "fields": list(_BODY_FIELDS[source_type]),
            },
        )
    return payload


def extract_keywords(text: str, limit: int = 10) -> List[str]:
    """Top ``limit`` frequent words of four or more letters, minus stop words."""
    word_freq: Dict[str, int] = {}
    for word in _KEYWORD_RE.findall(text.lower()):
        if word not in _STOP_WORDS:
            word_freq[word] = word_freq.get(word, 0) + 1
    ranked = sorted(word_freq.items(), key=lambda x: (-x[1], x[0]))
    return [word for word, _ in ranked[:limit]]


class Normalizer:
    """Normalizes raw ingestion content into bounded plain text."""

    def __init__(self, max_content_chars: int = None):
        self.max_content_chars = max_content_chars or settings.rag.max_content_chars

    def normalize(self, content: IngestContent) -> NormalizedContent:
        """Normalize raw content.

        Args:
            content: Raw ingestion content

        Returns:
            Plain text with enriched metadata

        Raises:
            ValidationError: If the title or the resulting text is empty
        """
        title = clean_whitespace(content.title or "")
        if not title:
            raise ValidationError("Title must not be empty", details={"source_id": content.source_id})

        payload = resolve_payload(content)
        source_type = SourceType(content.source_type)
        text = clean_whitespace(_RENDERERS[source_type](payload))

        truncated = len(text) > self.max_content_chars
        if truncated:
            text = text[:self.max_content_chars].rstrip()
            logger.warning(
                "Content truncated",
                source_id=content.source_id,
                max_chars=self.max_content_chars,
            )

        if not text:
            raise ValidationError(
                "Content is empty after normalization",
                details={"source_type": source_type.value, "source_id": content.source_id},
            )

        word_count = count_tokens(text)
        metadata = dict(content.metadata)
        metadata.setdefault("source_type", source_type.value)
        metadata.setdefault("word_count", word_count)
        metadata.setdefault("reading_time_minutes", max(1, math.ceil(word_count / 200)))
        metadata.setdefault("keywords", extract_keywords(text))
        metadata["content_hash"] = content_hash(text)
        metadata["truncated"] = truncated

        return NormalizedContent(title=title, text=text, metadata=metadata, truncated=truncated)


def content_hash(text: str) -> str:
    """SHA-256 hex digest of normalized text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
