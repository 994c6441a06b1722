from __future__ import annotations

import logging
import posixpath
import re
from typing import Iterable, Iterator, Optional, Sequence
from urllib.parse import unquote, urljoin, urlsplit

from bs4 import BeautifulSoup
from bs4.element import Tag

from media_index.models import AssetFragment, AssetType, Dimensions

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "svg", "bmp", "tiff", "ico"})
VIDEO_EXTENSIONS = frozenset({"mp4", "webm", "ogg", "avi", "mov", "wmv", "flv"})
DOCUMENT_EXTENSIONS = frozenset({"pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx"})
MEDIA_EXTENSIONS = IMAGE_EXTENSIONS | VIDEO_EXTENSIONS | DOCUMENT_EXTENSIONS

_BACKGROUND_URL = re.compile(
    r"background(?:-image)?\s*:[^;{}]*?url\(\s*['\"]?([^'\")]+?)['\"]?\s*\)",
    re.IGNORECASE,
)
_REJECTED_PREFIXES = ("data:", "#", "javascript:", "mailto:", "tel:")


def url_extension(src: str) -> str:
    path = urlsplit(src).path
    return posixpath.splitext(path)[1].lstrip(".").lower()


def asset_type_for(src: str) -> AssetType:
    ext = url_extension(src)
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if ext in DOCUMENT_EXTENSIONS:
        return "document"
    return "unknown"


def asset_name_for(src: str) -> str:
    path = urlsplit(src).path.rstrip("/")
    name = unquote(posixpath.basename(path))
    return name or src


def is_valid_media_src(src: Optional[str]) -> bool:
    if not src:
        return False
    value = src.strip()
    if not value:
        return False
    return not value.lower().startswith(_REJECTED_PREFIXES)


def _parse_dimension(value: object) -> Optional[int]:
    if value is None:
        return None
    text = str(value).strip().lower().removesuffix("px")
    return int(text) if text.isdigit() else None


def _srcset_candidates(srcset: str) -> Iterator[str]:
    """
    Yield the URL of each srcset candidate.

    A URL runs to the next whitespace and may itself contain commas (data: URLs);
    its descriptors run to the next comma.
    """
    position = 0
    length = len(srcset)
    while position < length:
        while position < length and (srcset[position].isspace() or srcset[position] == ","):
            position += 1
        start = position
        while position < length and not srcset[position].isspace():
            position += 1
        url = srcset[start:position]
        if url.endswith(","):
            url = url.rstrip(",")
        else:
            while position < length and srcset[position] != ",":
                position += 1
        if url:
            yield url


class MediaExtractor:
    """
    Extracts media references from one document's markup.

    Each rule is independent and the result is their union, deduplicated on
    `(src, used_in[0])`. Relative URLs are resolved against the document path.
    """

    def __init__(
        self,
        *,
        internal_hosts: Iterable[str] = (),
        image_service_patterns: Sequence[str] = (),
    ) -> None:
        self._internal_hosts = frozenset(host.strip().lower() for host in internal_hosts if host.strip())
        self._image_service_patterns = tuple(p.lower() for p in image_service_patterns if p)

    def extract(self, html: str, document_path: str) -> list[AssetFragment]:
        soup = BeautifulSoup(html, "html.parser")
        fragments: list[AssetFragment] = []
        seen: set[tuple[str, str]] = set()

        rules = (
            self._from_images,
            self._from_srcsets,
            self._from_inline_styles,
            self._from_style_blocks,
            self._from_videos,
            self._from_media_links,
        )
        for rule in rules:
            for fragment in rule(soup, document_path):
                key = (fragment.src, fragment.used_in[0])
                if key in seen:
                    continue
                seen.add(key)
                fragments.append(fragment)

        logger.debug("Extracted media references. document=%s assets=%s", document_path, len(fragments))
        return fragments

    def is_external(self, src: str) -> bool:
        host = (urlsplit(src).hostname or "").lower()
        if not host:
            return False
        return not any(host == internal or host.endswith("." + internal) for internal in self._internal_hosts)

    def is_media_url(self, src: str) -> bool:
        if url_extension(src) in MEDIA_EXTENSIONS:
            return True
        host = (urlsplit(src).hostname or "").lower()
        return bool(host) and any(pattern in host for pattern in self._image_service_patterns)

    def _fragment(
        self,
        raw_src: Optional[str],
        document_path: str,
        *,
        context: str,
        alt: str = "",
        dimensions: Optional[Dimensions] = None,
    ) -> Optional[AssetFragment]:
        if not is_valid_media_src(raw_src):
            return None
        src = urljoin(document_path, raw_src.strip())
        return AssetFragment(
            src=src,
            used_in=(document_path,),
            alt=alt,
            dimensions=dimensions,
            context=context,
            is_external=self.is_external(src),
        )

    def _from_images(self, soup: BeautifulSoup, document_path: str) -> Iterator[AssetFragment]:
        for img in soup.find_all("img", src=True):
            width = _parse_dimension(img.get("width"))
            height = _parse_dimension(img.get("height"))
            dimensions = Dimensions(width=width, height=height) if width or height else None
            fragment = self._fragment(
                img.get("src"),
                document_path,
                context="img",
                alt=(img.get("alt") or "").strip(),
                dimensions=dimensions,
            )
            if fragment:
                yield fragment

    def _from_srcsets(self, soup: BeautifulSoup, document_path: str) -> Iterator[AssetFragment]:
        elements: list[Tag] = list(soup.find_all("img", srcset=True))
        for picture in soup.find_all("picture"):
            elements.extend(picture.find_all("source", srcset=True))

        for element in elements:
            alt = (element.get("alt") or "").strip()
            if not alt and element.name == "source" and element.parent is not None:
                img = element.parent.find("img")
                if img is not None:
                    alt = (img.get("alt") or "").strip()
            for candidate in _srcset_candidates(element.get("srcset") or ""):
                fragment = self._fragment(candidate, document_path, context="srcset", alt=alt)
                if fragment:
                    yield fragment

    def _from_inline_styles(self, soup: BeautifulSoup, document_path: str) -> Iterator[AssetFragment]:
        for element in soup.find_all(style=True):
            for match in _BACKGROUND_URL.finditer(element.get("style") or ""):
                fragment = self._fragment(match.group(1), document_path, context="bg-style")
                if fragment:
                    yield fragment

    def _from_style_blocks(self, soup: BeautifulSoup, document_path: str) -> Iterator[AssetFragment]:
        for style in soup.find_all("style"):
            for match in _BACKGROUND_URL.finditer(style.get_text() or ""):
                fragment = self._fragment(match.group(1), document_path, context="bg-css")
                if fragment:
                    yield fragment

    def _from_videos(self, soup: BeautifulSoup, document_path: str) -> Iterator[AssetFragment]:
        for video in soup.find_all("video"):
            candidates = [
                (video.get("poster"), "video-poster"),
                (video.get("src"), "video-src"),
            ]
            candidates.extend((source.get("src"), "video-source") for source in video.find_all("source", src=True))
            for raw_src, context in candidates:
                fragment = self._fragment(raw_src, document_path, context=context)
                if fragment:
                    yield fragment

    def _from_media_links(self, soup: BeautifulSoup, document_path: str) -> Iterator[AssetFragment]:
        for link in soup.find_all("a", href=True):
            href = link.get("href")
            if not is_valid_media_src(href):
                continue
            if not self.is_media_url(urljoin(document_path, href.strip())):
                continue
            fragment = self._fragment(
                href,
                document_path,
                context="media-link",
                alt=link.get_text(" ", strip=True),
            )
            if fragment:
                yield fragment
