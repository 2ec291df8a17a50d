"""Core rendering pipeline for mineru2md."""

from __future__ import annotations

import base64
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from .layout import (
    BLOCK_IMAGE,
    BLOCK_INDEX,
    BLOCK_INTERLINE_EQUATION,
    BLOCK_LIST,
    BLOCK_TABLE,
    BLOCK_TITLE,
    CONTENT_BLOCK_TYPES,
    DEFAULT_MAX_BLOCK_DEPTH,
    FURNITURE_ASIDE_TEXT,
    FURNITURE_FOOTER,
    FURNITURE_HEADER,
    FURNITURE_PAGE_FOOTNOTE,
    FURNITURE_PAGE_NUMBER,
    SPAN_IMAGE,
    SPAN_INLINE_EQUATION,
    SPAN_INTERLINE_EQUATION,
    SPAN_TABLE,
    SPAN_TEXT,
    Block,
    LayoutDocument,
    Page,
    Span,
    load_layout_file,
)

LOG = logging.getLogger("mineru2md")

EXIT_INVALID_ARGS = 6
EXIT_INPUT_ERROR = 7
EXIT_OUTPUT_ERROR = 8

LOCALE_ENV = "MINERU2MD_LOCALE"
DEFAULT_LOCALE = "en"
PAGE_LABELS = {
    "en": "Page {page}",
    "zh": "第 {page} 页",
}

ANCHOR_SLUG_MAX_LEN = 50
HEADING_SHORT_TITLE_MAX_LEN = 20

MIME_TYPES = {
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}
DEFAULT_MIME_TYPE = "image/jpeg"

_ANCHOR_INVALID_RE = re.compile(r"[^0-9a-z\u4e00-\u9fff]+")

DOCUMENT_PREAMBLE = (
    "<style>\n"
    '  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, "Helvetica Neue", Arial, sans-serif; }\n'
    "  img { border-radius: 4px; }\n"
    "  code { background: #f4f4f4; padding: 0.2em 0.4em; border-radius: 3px; font-size: 0.9em; }\n"
    "  pre { background: #f8f8f8; padding: 1em; border-radius: 6px; overflow-x: auto; }\n"
    "</style>\n\n"
)
TOC_PLACEHOLDER = '<div id="toc-top"></div>\n\n'
DOCUMENT_OPENING = '<hr style="border: none; height: 1px; background: #ddd; margin: 2em 0;" />\n\n'
DOCUMENT_CLOSING = "\n---\n\n"
ATTRIBUTION = "*Generated by MinerU JSON to Markdown Converter*\n"

_BLOCK_IMG_STYLE = "max-width: 100%; height: auto; display: block; margin: 0 auto;"


@dataclass
class RenderConfig:
    locale: str = DEFAULT_LOCALE
    max_block_depth: int = DEFAULT_MAX_BLOCK_DEPTH
    verbose: bool = False
    debug: bool = False


@dataclass(frozen=True)
class TocEntry:
    title: str
    page: int
    anchor_id: str
    level: int


@dataclass(frozen=True)
class EmbeddedAsset:
    mime_type: str
    data_uri: str


@dataclass(frozen=True)
class AssetNotFound:
    path: str
    reason: str


EmbedResult = Union[EmbeddedAsset, AssetNotFound]


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_mineru2md_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_mineru2md_logger(level)


def _progress_bar_line(current: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "[?]"
    clamped = max(0, min(current, total))
    filled = min(int((clamped / total) * width), width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def _log_verbose_progress(prefix: str, current: int, total: int, detail: Optional[str] = None) -> None:
    bar = _progress_bar_line(current, total)
    counter = f"[{current}/{total}]" if total > 0 else f"[{current}]"
    if total > 0:
        msg = f"{prefix} {bar} {counter} ({(current / total) * 100.0:.1f}%)"
    else:
        msg = f"{prefix} {bar} {counter}"
    if detail:
        msg = f"{msg} | {detail}"
    LOG.info(msg)


def resolve_locale(value: Optional[str]) -> str:
    return (value or os.environ.get(LOCALE_ENV) or DEFAULT_LOCALE).strip().lower()


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Lone surrogates from the JSON input are replaced instead of failing the write.
    path.write_text(text, encoding="utf-8", errors="replace", newline="\n")


def default_output_path(input_path: Path) -> Path:
    return input_path.with_suffix(".md")


# Assets


def guess_mime_type(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower().lstrip("."), DEFAULT_MIME_TYPE)


class AssetEmbedder:
    """Turns relative asset references into ``data:`` URIs."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def embed(self, path: str) -> EmbedResult:
        if not path:
            return AssetNotFound(path, "empty path")
        try:
            full_path = (self.base_dir / path).resolve()
        except (OSError, ValueError) as exc:
            return AssetNotFound(path, str(exc))
        if not full_path.is_relative_to(self.base_dir.resolve()):
            LOG.debug("Asset outside of %s: %s", self.base_dir, path)
            return AssetNotFound(path, "outside base directory")
        if not full_path.is_file():
            LOG.debug("Asset not found: %s", full_path)
            return AssetNotFound(path, "missing file")
        try:
            payload = full_path.read_bytes()
        except OSError as exc:
            LOG.debug("Asset unreadable: %s (%s)", full_path, exc)
            return AssetNotFound(path, str(exc))
        mime_type = guess_mime_type(full_path)
        encoded = base64.b64encode(payload).decode("ascii")
        return EmbeddedAsset(mime_type=mime_type, data_uri=f"data:{mime_type};base64,{encoded}")


def _embed_data_uri(embedder: AssetEmbedder, path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    result = embedder.embed(path)
    if isinstance(result, EmbeddedAsset):
        return result.data_uri
    return None


# Text helpers


def escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def extract_text(block: Block, max_depth: int = DEFAULT_MAX_BLOCK_DEPTH, _depth: int = 0) -> str:
    """Concatenate every span ``content`` of ``block`` and its sub-blocks."""
    if _depth > max_depth:
        LOG.warning("Block nesting deeper than %d levels; ignoring text of %r", max_depth, block.type)
        return ""
    parts = [span.content for span in block.iter_spans() if span.content]
    parts.extend(extract_text(child, max_depth, _depth + 1) for child in block.blocks)
    return "".join(parts)


def generate_anchor_id(title: str, page_idx: int) -> str:
    slug = _ANCHOR_INVALID_RE.sub("-", title.lower()).strip("-")[:ANCHOR_SLUG_MAX_LEN]
    return f"toc-{page_idx}-{slug or 'title'}"


def heading_level(title: str) -> int:
    # Longer titles get the deeper heading mark.
    return 1 if len(title) <= HEADING_SHORT_TITLE_MAX_LEN else 2


def render_spans(spans: Sequence[Span], embedder: AssetEmbedder) -> Tuple[str, bool]:
    parts: List[str] = []
    has_formula = False
    for span in spans:
        content = span.content or ""
        if span.type == SPAN_TEXT:
            parts.append(escape_html(content))
        elif span.type == SPAN_INLINE_EQUATION:
            has_formula = True
            parts.append(f" ${content}$ ")
        elif span.type == SPAN_INTERLINE_EQUATION:
            has_formula = True
            parts.append(f"\n\n$$\n{content}\n$$\n\n")
        elif span.type == SPAN_IMAGE:
            data_uri = _embed_data_uri(embedder, span.image_path)
            if data_uri:
                parts.append(f'<img src="{data_uri}" alt="image" style="max-width: 100%; height: auto;" />')
    return "".join(parts), has_formula


# Block renderers


def render_title(block: Block, page_idx: int, config: RenderConfig) -> Tuple[str, Optional[TocEntry]]:
    text = extract_text(block, config.max_block_depth).strip()
    if not text:
        return "", None

    anchor_id = generate_anchor_id(text, page_idx)
    level = heading_level(text)
    entry = TocEntry(title=text, page=page_idx + 1, anchor_id=anchor_id, level=level)
    hashes = "#" * (level + 1)
    return f'<a id="{anchor_id}"></a>\n\n{hashes} {text}\n\n', entry


def render_text(block: Block, embedder: AssetEmbedder) -> str:
    text = "".join(render_spans(line.spans, embedder)[0] for line in block.lines)
    return f"{text}\n\n" if text else ""


def render_list(block: Block, config: RenderConfig) -> str:
    items = []
    for child in block.blocks:
        text = extract_text(child, config.max_block_depth).strip()
        if text:
            items.append(f"- {text}\n")
    if not items:
        return ""
    return "".join(items) + "\n"


def _find_body_image(block: Block, body_type: str, span_type: str, alt: str, embedder: AssetEmbedder) -> str:
    image_html = ""
    for child in block.blocks:
        if child.type != body_type:
            continue
        for span in child.iter_spans():
            if span.type != span_type:
                continue
            data_uri = _embed_data_uri(embedder, span.image_path)
            if data_uri:
                image_html = f'<img src="{data_uri}" alt="{alt}" style="{_BLOCK_IMG_STYLE}" />'
    return image_html


def render_image(block: Block, embedder: AssetEmbedder, config: RenderConfig) -> str:
    image_html = _find_body_image(block, "image_body", SPAN_IMAGE, "figure", embedder)
    if not image_html:
        return ""

    captions = []
    for child in block.blocks:
        if child.type in ("image_caption", "image_footnote"):
            text = extract_text(child, config.max_block_depth).strip()
            if text:
                captions.append(
                    '<figcaption style="text-align: center; font-size: 0.9em; color: #666; margin-top: 0.5em;">'
                    f"{escape_html(text)}</figcaption>"
                )

    caption_html = "".join(captions)
    return f'<figure style="margin: 1.5em 0; text-align: center;">\n{image_html}\n{caption_html}\n</figure>\n\n'


def render_table(block: Block, embedder: AssetEmbedder, config: RenderConfig) -> str:
    table_html = _find_body_image(block, "table_body", SPAN_TABLE, "table", embedder)
    if not table_html:
        return ""

    caption_html = ""
    footnote_html = ""
    for child in block.blocks:
        if child.type == "table_caption":
            text = extract_text(child, config.max_block_depth).strip()
            if text:
                caption_html = (
                    f'<caption style="font-weight: bold; margin-bottom: 0.5em;">{escape_html(text)}</caption>'
                )
        elif child.type == "table_footnote":
            text = extract_text(child, config.max_block_depth).strip()
            if text:
                footnote_html = (
                    f'<p style="font-size: 0.85em; color: #666; margin-top: 0.5em;">{escape_html(text)}</p>'
                )

    return (
        '<div style="margin: 1.5em 0; overflow-x: auto;">\n'
        f"{caption_html}\n{table_html}\n{footnote_html}\n</div>\n\n"
    )


def render_interline_equation(block: Block, embedder: AssetEmbedder) -> str:
    span = next((s for s in block.iter_spans() if s.type == SPAN_INTERLINE_EQUATION), None)
    if span is None:
        return ""
    data_uri = _embed_data_uri(embedder, span.image_path)
    if data_uri:
        return (
            '<div style="margin: 1em 0; text-align: center;">\n'
            f'<img src="{data_uri}" alt="equation" style="max-height: 80px;" />\n'
            "</div>\n\n"
        )
    if span.content:
        return f"\n$$\n{span.content}\n$$\n\n"
    return ""


def render_index(block: Block, config: RenderConfig) -> str:
    text = extract_text(block, config.max_block_depth).strip()
    return f"{text}\n\n" if text else ""


def render_block(
    block: Block, page_idx: int, embedder: AssetEmbedder, config: RenderConfig
) -> Tuple[str, Optional[TocEntry]]:
    if block.type == BLOCK_TITLE:
        return render_title(block, page_idx, config)
    if block.type == BLOCK_LIST:
        return render_list(block, config), None
    if block.type == BLOCK_IMAGE:
        return render_image(block, embedder, config), None
    if block.type == BLOCK_TABLE:
        return render_table(block, embedder, config), None
    if block.type == BLOCK_INTERLINE_EQUATION:
        return render_interline_equation(block, embedder), None
    if block.type == BLOCK_INDEX:
        return render_index(block, config), None
    if block.type not in CONTENT_BLOCK_TYPES:
        LOG.debug("Unrecognized block type %r rendered as text", block.type)
    return render_text(block, embedder), None


# Page furniture

_FURNITURE_TEMPLATES = {
    FURNITURE_HEADER: (
        '<div style="font-size: 0.8em; color: #999; border-bottom: 1px solid #eee; '
        'padding: 0.3em 0; margin-bottom: 0.5em;">{text}</div>\n'
    ),
    FURNITURE_FOOTER: (
        '<div style="font-size: 0.8em; color: #999; border-top: 1px solid #eee; padding-top: 0.3em;">{text}</div>\n'
    ),
    FURNITURE_PAGE_FOOTNOTE: (
        '<div style="font-size: 0.85em; color: #666; border-top: 1px solid #ddd; '
        'padding-top: 0.5em; margin-top: 0.3em;">{text}</div>\n'
    ),
    FURNITURE_ASIDE_TEXT: '<aside style="font-size: 0.85em; color: #777; font-style: italic;">{text}</aside>\n',
}


def render_furniture_block(block: Block, config: Optional[RenderConfig] = None) -> str:
    """Render one discarded block; page numbers and unknown types render as ``""``."""
    max_depth = config.max_block_depth if config else DEFAULT_MAX_BLOCK_DEPTH
    text = extract_text(block, max_depth).strip()
    template = _FURNITURE_TEMPLATES.get(block.type)
    if not text or template is None:
        return ""
    return template.format(text=escape_html(text))


def partition_furniture(blocks: Sequence[Block]) -> Tuple[List[Block], List[Block]]:
    header_like: List[Block] = []
    footer_like: List[Block] = []
    for block in blocks:
        if block.type in (FURNITURE_HEADER, FURNITURE_PAGE_NUMBER):
            header_like.append(block)
        else:
            footer_like.append(block)
    return header_like, footer_like


def _render_header_banner(blocks: Sequence[Block], config: RenderConfig) -> str:
    texts = [extract_text(b, config.max_block_depth).strip() for b in blocks]
    texts = [t for t in texts if t]
    if not texts:
        return ""
    return (
        '<div style="background: #fafafa; padding: 0.5em 1em; margin-bottom: 1em; '
        'border-radius: 4px; font-size: 0.85em; color: #888;">\n'
        f"<span>{escape_html(' · '.join(texts))}</span>\n"
        "</div>\n\n"
    )


def _render_footnote_container(blocks: Sequence[Block], config: RenderConfig) -> str:
    fragments = [render_furniture_block(b, config) for b in blocks]
    fragments = [f for f in fragments if f]
    if not fragments:
        return ""
    return (
        '\n<div style="background: #f8f8f8; padding: 0.8em 1em; margin-top: 1.5em; '
        'border-left: 3px solid #ddd; border-radius: 0 4px 4px 0; font-size: 0.85em; color: #666;">\n'
        f"{''.join(fragments)}"
        "</div>\n\n"
    )


def render_page(page: Page, embedder: AssetEmbedder, config: RenderConfig) -> Tuple[str, List[TocEntry]]:
    header_like, footer_like = partition_furniture(page.discarded_blocks)
    parts = [_render_header_banner(header_like, config)]
    entries: List[TocEntry] = []

    for block in page.para_blocks:
        fragment, entry = render_block(block, page.page_idx, embedder, config)
        parts.append(fragment)
        if entry is not None:
            entries.append(entry)

    parts.append(_render_footnote_container(footer_like, config))
    return "".join(parts), entries


# Document


def generate_page_divider(page_num: int, locale: str = DEFAULT_LOCALE) -> str:
    label = PAGE_LABELS.get(locale, PAGE_LABELS[DEFAULT_LOCALE]).format(page=page_num)
    return (
        '\n<div style="display: flex; align-items: center; margin: 2.5em 0; gap: 1em;">\n'
        '  <div style="flex: 1; height: 1px; background: #ddd;"></div>\n'
        f'  <span style="color: #888; font-size: 0.85em;">{label}</span>\n'
        '  <div style="flex: 1; height: 1px; background: #ddd;"></div>\n'
        "</div>\n\n"
    )


def generate_toc(entries: Sequence[TocEntry]) -> str:
    # Entries are collected for a future table of contents; only the anchor target is emitted.
    return TOC_PLACEHOLDER if entries else ""


def render_document(
    document: LayoutDocument, embedder: AssetEmbedder, config: Optional[RenderConfig] = None
) -> Tuple[str, List[TocEntry]]:
    config = config or RenderConfig()
    page_contents: List[str] = []
    all_entries: List[TocEntry] = []

    total = len(document.pages)
    for i, page in enumerate(document.pages, start=1):
        content, entries = render_page(page, embedder, config)
        page_contents.append(content)
        all_entries.extend(entries)
        if config.verbose:
            _log_verbose_progress("Rendering pages", i, total, detail=f"page_idx={page.page_idx}")

    parts = [DOCUMENT_PREAMBLE, generate_toc(all_entries), DOCUMENT_OPENING]
    for page_num, content in enumerate(page_contents, start=1):
        parts.append(content)
        parts.append(generate_page_divider(page_num, config.locale))
    parts.append(DOCUMENT_CLOSING)
    parts.append(ATTRIBUTION)
    return "".join(parts), all_entries


def convert_layout_to_markdown(
    document: LayoutDocument, embedder: AssetEmbedder, config: Optional[RenderConfig] = None
) -> str:
    markdown, _ = render_document(document, embedder, config)
    return markdown


def write_markdown(document: LayoutDocument, base_dir: Path, output_path: Path, config: RenderConfig) -> List[TocEntry]:
    embedder = AssetEmbedder(base_dir)
    markdown, entries = render_document(document, embedder, config)
    LOG.info("Collected %d heading(s)", len(entries))
    try:
        safe_write_text(output_path, markdown)
    except (OSError, UnicodeError) as exc:
        raise RuntimeError(f"Error writing output {output_path}: {exc}") from exc
    return entries


def run_conversion(
    input_path: Path, output_path: Optional[Path] = None, config: Optional[RenderConfig] = None
) -> Tuple[Path, int]:
    """Read ``input_path``, render it and write the Markdown to ``output_path``.

    ``output_path`` defaults to ``input_path`` with a ``.md`` suffix. Returns
    the written path and the number of rendered pages.

    Raises ``ValueError`` for unusable input and ``RuntimeError`` for a
    missing input file or a failed write.
    """
    config = config or RenderConfig()
    if not input_path.is_file():
        raise RuntimeError(f"File not found: {input_path}")
    output_path = output_path or default_output_path(input_path)

    document = load_layout_file(input_path, config.max_block_depth)
    LOG.info("Loaded %d page(s) from %s", len(document.pages), input_path)
    write_markdown(document, input_path.parent, output_path, config)
    return output_path, len(document.pages)
