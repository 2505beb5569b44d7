from __future__ import annotations

import asyncio
import io
import zipfile
from pathlib import Path

import pytest

from lounge.errors import StoreError
from lounge.stores import MemoryDocumentStore

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def _xhtml(title: str, body: str) -> str:
    return f"""<?xml version="1.0" encoding="utf-8"?>
<html xmlns="http://www.w3.org/1999/xhtml">
  <head><title>{title}</title></head>
  <body>
{body}
  </body>
</html>
"""


def build_epub(
    chapters: list[tuple[str, str]],
    *,
    title: str | None = "Sample Book",
    author: str | None = "Sample Author",
    cover: bytes | None = None,
    extra_spine: list[tuple[str, str, str]] | None = None,
) -> bytes:
    """Return EPUB bytes whose spine lists ``chapters`` as (idref, body) pairs."""
    metadata = []
    if title:
        metadata.append(f"<dc:title>{title}</dc:title>")
    if author:
        metadata.append(f"<dc:creator>{author}</dc:creator>")
    manifest = []
    spine = []
    for idref, _ in chapters:
        manifest.append(f'<item id="{idref}" href="{idref}.xhtml" media-type="application/xhtml+xml"/>')
        spine.append(f'<itemref idref="{idref}"/>')
    for idref, href, media_type in extra_spine or []:
        manifest.append(f'<item id="{idref}" href="{href}" media-type="{media_type}"/>')
        spine.append(f'<itemref idref="{idref}"/>')
    if cover is not None:
        manifest.append(
            '<item id="cover-img" href="images/cover.png" media-type="image/png" '
            'properties="cover-image"/>'
        )
    opf_xml = f"""<?xml version="1.0" encoding="UTF-8"?>
<package version="3.0" unique-identifier="BookId" xmlns="http://www.idpf.org/2007/opf">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    {''.join(metadata)}
  </metadata>
  <manifest>
    {''.join(manifest)}
  </manifest>
  <spine>
    {''.join(spine)}
  </spine>
</package>
"""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip")
        zf.writestr("META-INF/container.xml", CONTAINER_XML)
        zf.writestr("OEBPS/content.opf", opf_xml)
        for idref, body in chapters:
            zf.writestr(f"OEBPS/{idref}.xhtml", _xhtml(idref, body))
        if cover is not None:
            zf.writestr("OEBPS/images/cover.png", cover)
    return buffer.getvalue()


def png_bytes(width: int = 40, height: int = 20, color: str = "red") -> bytes:
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FlakyDocumentStore(MemoryDocumentStore):
    """Memory store that fails selected operations with ``StoreError``."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_sets: set[tuple[str, str]] = set()
        self.fail_get_many: set[str] = set()
        self.fail_all_sets = False

    async def set(self, collection, doc_id, data, *, merge=False):
        if self.fail_all_sets or (collection, doc_id) in self.fail_sets:
            self.calls.append(("set-failed", collection, doc_id))
            raise StoreError(f"simulated failure writing {collection}/{doc_id}")
        await super().set(collection, doc_id, data, merge=merge)

    async def get_many(self, collection, doc_ids):
        if any(doc_id in self.fail_get_many for doc_id in doc_ids):
            raise StoreError(f"simulated batch failure for {list(doc_ids)}")
        return await super().get_many(collection, doc_ids)


@pytest.fixture
def epub_path(tmp_path: Path) -> Path:
    path = tmp_path / "sample.epub"
    path.write_bytes(
        build_epub(
            [
                ("ch1", "<h1>Chapter One</h1><p>This is the first chapter.</p>"),
                ("ch2", "<h1>Chapter Two</h1><p>This is the second chapter.</p>"),
            ]
        )
    )
    return path


class YieldingDocumentStore(MemoryDocumentStore):
    """Memory store that yields to the event loop before every read and write."""

    async def get(self, collection, doc_id):
        await asyncio.sleep(0)
        return await super().get(collection, doc_id)

    async def set(self, collection, doc_id, data, *, merge=False):
        await asyncio.sleep(0)
        await super().set(collection, doc_id, data, merge=merge)
