"""Layout description model for mineru2md."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

LOG = logging.getLogger("mineru2md")

DEFAULT_MAX_BLOCK_DEPTH = 64

BLOCK_TITLE = "title"
BLOCK_TEXT = "text"
BLOCK_LIST = "list"
BLOCK_IMAGE = "image"
BLOCK_TABLE = "table"
BLOCK_INTERLINE_EQUATION = "interline_equation"
BLOCK_INDEX = "index"

CONTENT_BLOCK_TYPES = frozenset(
    {
        BLOCK_TITLE,
        BLOCK_TEXT,
        BLOCK_LIST,
        BLOCK_IMAGE,
        BLOCK_TABLE,
        BLOCK_INTERLINE_EQUATION,
        BLOCK_INDEX,
    }
)

FURNITURE_HEADER = "header"
FURNITURE_FOOTER = "footer"
FURNITURE_PAGE_NUMBER = "page_number"
FURNITURE_PAGE_FOOTNOTE = "page_footnote"
FURNITURE_ASIDE_TEXT = "aside_text"

SPAN_TEXT = "text"
SPAN_INLINE_EQUATION = "inline_equation"
SPAN_INTERLINE_EQUATION = "interline_equation"
SPAN_IMAGE = "image"
SPAN_TABLE = "table"


@dataclass(frozen=True)
class Span:
    type: str
    content: Optional[str] = None
    image_path: Optional[str] = None
    bbox: Tuple[float, ...] = ()


@dataclass(frozen=True)
class Line:
    spans: List[Span] = field(default_factory=list)
    bbox: Tuple[float, ...] = ()


@dataclass(frozen=True)
class Block:
    """One node of the block tree.

    Leaf blocks carry ``lines``; composite blocks (lists, image and table
    groups) carry child ``blocks``. Both default to empty so renderers never
    have to distinguish missing from empty.
    """

    type: str
    lines: List[Line] = field(default_factory=list)
    blocks: List["Block"] = field(default_factory=list)
    bbox: Tuple[float, ...] = ()
    angle: Optional[float] = None
    index: Optional[int] = None
    sub_type: Optional[str] = None

    def iter_spans(self):
        for line in self.lines:
            yield from line.spans


@dataclass(frozen=True)
class Page:
    page_idx: int
    page_size: Tuple[float, float] = (0.0, 0.0)
    para_blocks: List[Block] = field(default_factory=list)
    discarded_blocks: List[Block] = field(default_factory=list)


@dataclass(frozen=True)
class LayoutDocument:
    pages: List[Page]
    backend: Optional[str] = None
    version_name: Optional[str] = None


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _optional_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _bbox(value: Any) -> Tuple[float, ...]:
    if not isinstance(value, list):
        return ()
    numbers = [_optional_number(v) for v in value]
    return tuple(n for n in numbers if n is not None)


def _dict_items(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def parse_span(raw: Dict[str, Any]) -> Span:
    return Span(
        type=_optional_str(raw.get("type")) or "",
        content=_optional_str(raw.get("content")),
        image_path=_optional_str(raw.get("image_path")),
        bbox=_bbox(raw.get("bbox")),
    )


def parse_line(raw: Dict[str, Any]) -> Line:
    return Line(spans=[parse_span(s) for s in _dict_items(raw.get("spans"))], bbox=_bbox(raw.get("bbox")))


def parse_block(raw: Dict[str, Any], depth: int = 0, max_depth: int = DEFAULT_MAX_BLOCK_DEPTH) -> Block:
    block_type = _optional_str(raw.get("type")) or ""
    children: List[Block] = []
    raw_children = _dict_items(raw.get("blocks"))
    if raw_children:
        if depth >= max_depth:
            LOG.warning("Block nesting deeper than %d levels; dropping sub-blocks of %r", max_depth, block_type)
        else:
            children = [parse_block(child, depth + 1, max_depth) for child in raw_children]

    index = raw.get("index")
    return Block(
        type=block_type,
        lines=[parse_line(line) for line in _dict_items(raw.get("lines"))],
        blocks=children,
        bbox=_bbox(raw.get("bbox")),
        angle=_optional_number(raw.get("angle")),
        index=index if isinstance(index, int) and not isinstance(index, bool) else None,
        sub_type=_optional_str(raw.get("sub_type")),
    )


def parse_page(raw: Dict[str, Any], position: int, max_depth: int = DEFAULT_MAX_BLOCK_DEPTH) -> Page:
    page_idx = raw.get("page_idx")
    if isinstance(page_idx, bool) or not isinstance(page_idx, int) or page_idx < 0:
        LOG.debug("Page at position %d has no usable page_idx; using position", position)
        page_idx = position

    size = _bbox(raw.get("page_size"))
    page_size = (size[0], size[1]) if len(size) >= 2 else (0.0, 0.0)

    return Page(
        page_idx=page_idx,
        page_size=page_size,
        para_blocks=[parse_block(b, 0, max_depth) for b in _dict_items(raw.get("para_blocks"))],
        discarded_blocks=[parse_block(b, 0, max_depth) for b in _dict_items(raw.get("discarded_blocks"))],
    )


def parse_layout(data: Any, max_depth: int = DEFAULT_MAX_BLOCK_DEPTH) -> LayoutDocument:
    """Build a :class:`LayoutDocument` from decoded JSON.

    Only the root shape is enforced: an object with a ``pdf_info`` list.
    Everything below it degrades to empty values instead of failing.
    """
    if not isinstance(data, dict):
        raise ValueError("Layout root must be a JSON object")
    pdf_info = data.get("pdf_info")
    if not isinstance(pdf_info, list):
        raise ValueError("Layout is missing the 'pdf_info' page list")

    pages: List[Page] = []
    for position, raw_page in enumerate(pdf_info):
        if not isinstance(raw_page, dict):
            LOG.debug("Skipping non-object page entry at position %d", position)
            continue
        pages.append(parse_page(raw_page, position, max_depth))

    return LayoutDocument(
        pages=pages,
        backend=_optional_str(data.get("_backend")),
        version_name=_optional_str(data.get("_version_name")),
    )


def load_layout_file(path: Path, max_depth: int = DEFAULT_MAX_BLOCK_DEPTH) -> LayoutDocument:
    try:
        raw_text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ValueError(f"Unable to read layout file {path}: {exc}") from exc
    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
    except RecursionError as exc:
        raise ValueError(f"Invalid JSON in {path}: nesting too deep") from exc
    try:
        document = parse_layout(data, max_depth)
    except ValueError as exc:
        raise ValueError(f"Invalid layout file {path}: {exc}") from exc

    if document.backend or document.version_name:
        LOG.debug("Layout produced by backend=%s version=%s", document.backend, document.version_name)
    return document
