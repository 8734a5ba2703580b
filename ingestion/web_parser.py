from __future__ import annotations

import re
from typing import List, Optional

from bs4 import BeautifulSoup, Comment

from ingestion.cleaners import (
    collapse_lines,
    decode_entities,
    strip_markdown_inline,
    word_count,
)
from ingestion.document_models import (
    DocumentStructure,
    Header,
    ListBlock,
    PageContent,
    ParsedDocument,
    Section,
    TableBlock,
)

# paragraph-level blocks end up separated by a blank line, rows and items by a newline
PARAGRAPH_BREAK = "\u2029"
PARAGRAPH_TAGS = ["p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "ul", "ol", "table"]
LINE_TAGS = ["li", "tr", "tbody", "thead"]
HEADER_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]

_MD_HEADER = re.compile(r"^(#{1,6})\s+(.+)$")
_MD_LIST_ITEM = re.compile(r"^(\s*)([*+-]|\d+\.)\s+(.+)$")
_TEXT_LIST_ITEM = re.compile(r"^([•●○◦▪▸►]|\d+[.)]|[a-z][.)]|[–—-])\s+(.+)$")


def _is_all_caps_header(line: str) -> bool:
    return (
        line == line.upper()
        and 3 < len(line) < 100
        and re.search(r"[A-Z]", line) is not None
    )


def _single_page(content: str) -> List[PageContent]:
    return [PageContent(page_number=1, content=content, offset=0)]


def _metadata(title: str, content: str, mime_type: str, page_count: int) -> dict:
    return {
        "title": title,
        "word_count": word_count(content),
        "char_count": len(content),
        "page_count": page_count,
        "mime_type": mime_type,
    }


class WebContentParser:
    """HTML, Markdown and plain-text parser."""

    def supported_mime_types(self) -> List[str]:
        return ["text/html", "text/plain", "text/markdown"]

    def parse(self, data: bytes, mime_type: str) -> ParsedDocument:
        text = data.decode("utf-8", errors="replace")
        if mime_type == "text/html":
            return self.parse_html(text)
        if mime_type == "text/markdown":
            return self.parse_markdown(text)
        return self.parse_plain_text(text)

    # --------------------
    # HTML
    # --------------------
    def parse_html(self, html: str) -> ParsedDocument:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        for c in soup.find_all(string=lambda s: isinstance(s, Comment)):
            c.extract()

        title = "Untitled"
        if soup.title and soup.title.get_text(strip=True):
            title = soup.title.get_text(strip=True)

        body = soup.body or soup
        structure = self._html_structure(body)

        for br in body.find_all("br"):
            br.replace_with("\n")
        for tag in body.find_all(PARAGRAPH_TAGS):
            tag.insert_before(PARAGRAPH_BREAK)
            tag.insert_after(PARAGRAPH_BREAK)
        for tag in body.find_all(LINE_TAGS):
            tag.insert_before("\n")
            tag.insert_after("\n")
        if soup.title:
            soup.title.decompose()
        blocks = (collapse_lines(b) for b in body.get_text(" ").split(PARAGRAPH_BREAK))
        content = "\n\n".join(b for b in blocks if b)

        return ParsedDocument(
            content=content,
            metadata=_metadata(title, content, "text/html", 1),
            pages=_single_page(content),
            structure=structure,
        )

    def _html_structure(self, body) -> DocumentStructure:
        headers: List[Header] = []
        sections: List[Section] = []
        lists: List[ListBlock] = []
        tables: List[TableBlock] = []
        line = 0
        for el in body.find_all(HEADER_TAGS + ["ul", "ol", "table"]):
            line += 1
            if el.name in HEADER_TAGS:
                text = collapse_lines(el.get_text(" ")).replace("\n", " ")
                if not text:
                    continue
                level = int(el.name[1])
                headers.append(Header(level=level, text=text, line=line))
                sections.append(Section(title=text, level=level, start_line=line))
            elif el.name == "table":
                rows = []
                for tr in el.find_all("tr"):
                    cells = [c.get_text(" ", strip=True) for c in tr.find_all(["td", "th"])]
                    if cells:
                        rows.append(cells)
                if rows:
                    tables.append(TableBlock(rows=rows, line=line))
            else:
                items = [li.get_text(" ", strip=True) for li in el.find_all("li")]
                items = [i for i in items if i]
                if items:
                    lists.append(ListBlock(ordered=el.name == "ol", items=items, line=line))
        return DocumentStructure(
            sections=sections, headers=headers, lists=lists, tables=tables
        )

    # --------------------
    # Markdown
    # --------------------
    def parse_markdown(self, markdown: str) -> ParsedDocument:
        title = "Untitled"
        headers: List[Header] = []
        sections: List[Section] = []
        lists: List[ListBlock] = []
        parts: List[str] = []

        current: Optional[List[str]] = None
        current_ordered = False
        current_line = 0

        def close_list() -> None:
            nonlocal current
            if current:
                lists.append(
                    ListBlock(ordered=current_ordered, items=current, line=current_line)
                )
            current = None

        for i, raw in enumerate(markdown.replace("\r\n", "\n").split("\n")):
            line = decode_entities(raw)
            m = _MD_HEADER.match(line)
            if m:
                close_list()
                level = len(m.group(1))
                text = strip_markdown_inline(m.group(2).strip())
                headers.append(Header(level=level, text=text, line=i))
                sections.append(Section(title=text, level=level, start_line=i))
                if level == 1 and title == "Untitled":
                    title = text
                parts.append(text)
                continue

            m = _MD_LIST_ITEM.match(line)
            if m:
                item = strip_markdown_inline(m.group(3).strip())
                ordered = m.group(2)[0].isdigit()
                if current is None:
                    current = []
                    current_ordered = ordered
                    current_line = i
                current.append(item)
                parts.append(item)
                continue

            close_list()
            parts.append(strip_markdown_inline(line))

        close_list()
        content = "\n".join(parts).strip()
        return ParsedDocument(
            content=content,
            metadata=_metadata(title, content, "text/markdown", 1),
            pages=_single_page(content),
            structure=DocumentStructure(sections=sections, headers=headers, lists=lists),
        )

    # --------------------
    # Plain text
    # --------------------
    def parse_plain_text(self, text: str) -> ParsedDocument:
        content = text.replace("\r\n", "\n").strip()

        # form feeds mark page breaks
        pages: List[PageContent] = []
        offset = 0
        for n, page in enumerate(content.split("\f"), start=1):
            pages.append(PageContent(page_number=n, content=page, offset=offset))
            offset += len(page) + 1

        headers: List[Header] = []
        sections: List[Section] = []
        lists: List[ListBlock] = []
        current: Optional[List[str]] = None
        current_ordered = False
        current_line = 0

        lines = content.replace("\f", "\n").split("\n")
        for i, raw in enumerate(lines):
            line = raw.strip()
            if not line:
                if current:
                    lists.append(ListBlock(current_ordered, current, current_line))
                current = None
                continue
            if _is_all_caps_header(line):
                headers.append(Header(level=1, text=line, line=i))
                sections.append(Section(title=line, level=1, start_line=i))
                continue
            m = _TEXT_LIST_ITEM.match(line)
            if m:
                if current is None:
                    current = []
                    current_ordered = m.group(1)[0].isalnum()
                    current_line = i
                current.append(m.group(2))
        if current:
            lists.append(ListBlock(current_ordered, current, current_line))

        first = next((l.strip() for l in lines if l.strip()), "")
        title = first if first and len(first) < 100 else "Untitled"

        return ParsedDocument(
            content=content,
            metadata=_metadata(title, content, "text/plain", len(pages)),
            pages=pages,
            structure=DocumentStructure(sections=sections, headers=headers, lists=lists),
        )
