"""
Source Extractor — origin → normalized text
════════════════════════════════════════════

One handler per source kind, selected by SourceExtractor.extract():

  TEXT       pasted text, CRLF → LF, trimmed
  URL        httpx GET; HTML is reduced to visible text with BeautifulSoup
  YOUTUBE    yt-dlp metadata, subtitle track (manual first, then automatic) via httpx
  FILE_PDF   pypdf text layer, pages joined by blank lines
  FILE_DOCX  python-docx paragraphs
  FILE_TXT   utf-8, falling back to latin-1

File kinds read their bytes from object storage through an injected
loader, so the worker never receives raw bytes in a task payload.

Every failure is raised as ExtractionError(reason). The reason is stored
verbatim on the source, so it is phrased for end users.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from uuid import UUID

import httpx
import yt_dlp
from bs4 import BeautifulSoup
from yt_dlp.utils import DownloadError

from knowledge_sources.core.errors import ExtractionError
from knowledge_sources.schemas.sources import SourceRecord, SourceType

logger = logging.getLogger(__name__)

EMPTY_TEXT_REASON = "No readable text could be extracted from the source"

_USER_AGENT = "Mozilla/5.0 (compatible; KnowledgeSourcesBot/1.0)"
_STRIP_TAGS = ["script", "style", "noscript", "template"]

# <00:00:01.000>, <c>, </c>, <v Speaker> … inside VTT cue text
_VTT_INLINE_TAG = re.compile(r"<[^>]+>")
_SRT_INDEX      = re.compile(r"^\d+$")
_SUBTITLE_FORMATS = ("vtt", "srt")

FileLoader = Callable[[UUID, str], Awaitable[bytes]]
HttpClientFactory = Callable[[], httpx.AsyncClient]
VideoInfoFetcher = Callable[[str], dict[str, Any]]


@dataclass
class ExtractionResult:
    text:       str
    word_count: int
    metadata:   dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def normalize_text(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def count_words(text: str) -> int:
    return len(text.split())


def parse_text(text: str) -> ExtractionResult:
    normalized = normalize_text(text)
    return ExtractionResult(
        text=normalized,
        word_count=count_words(normalized),
        metadata={"source_type": SourceType.TEXT.value},
    )


def html_to_text(html: str) -> tuple[str, str | None]:
    """Return (visible text, <title>) with one block per line."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    title = soup.title.get_text(strip=True) if soup.title else None
    raw = soup.get_text(separator="\n")
    lines = (" ".join(line.split()) for line in raw.splitlines())
    return "\n".join(line for line in lines if line), title or None


def parse_subtitles(content: str) -> str:
    """Plain text from SRT or VTT content; cue numbers, timings and markup removed."""
    text_parts: list[str] = []
    in_note = False
    for line in content.replace("\r\n", "\n").split("\n"):
        line = line.strip()
        if not line:
            in_note = False
            continue
        if in_note:
            continue
        upper = line.upper()
        if upper.startswith("WEBVTT") or upper.startswith(("KIND:", "LANGUAGE:")):
            continue
        if upper.startswith(("NOTE", "STYLE", "REGION")):
            in_note = True
            continue
        if _SRT_INDEX.match(line) or "-->" in line:
            continue
        cleaned = " ".join(_VTT_INLINE_TAG.sub("", line).split())
        # Rolling auto-captions repeat the previous line
        if cleaned and (not text_parts or text_parts[-1] != cleaned):
            text_parts.append(cleaned)
    return "\n".join(text_parts)


def _read_pdf(data: bytes) -> tuple[str, dict[str, Any]]:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(pages), {"page_count": len(pages)}


def _read_docx(data: bytes) -> tuple[str, dict[str, Any]]:
    import docx

    document = docx.Document(io.BytesIO(data))
    paragraphs = [p.text for p in document.paragraphs]
    return "\n".join(paragraphs), {"paragraph_count": len(paragraphs)}


def _read_txt(data: bytes) -> tuple[str, dict[str, Any]]:
    try:
        return data.decode("utf-8"), {"encoding": "utf-8"}
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="replace"), {"encoding": "latin-1"}


_FILE_READERS: dict[SourceType, Callable[[bytes], tuple[str, dict[str, Any]]]] = {
    SourceType.FILE_PDF:  _read_pdf,
    SourceType.FILE_DOCX: _read_docx,
    SourceType.FILE_TXT:  _read_txt,
}

_FILE_LABELS = {
    SourceType.FILE_PDF:  "PDF",
    SourceType.FILE_DOCX: "DOCX",
    SourceType.FILE_TXT:  "text",
}


def fetch_video_info(url: str) -> dict[str, Any]:
    """Blocking: video info from yt-dlp, nothing downloaded."""
    opts = {"skip_download": True, "quiet": True, "no_warnings": True}
    with yt_dlp.YoutubeDL(opts) as ydl:
        return ydl.extract_info(url, download=False) or {}


def pick_subtitle_track(
    info: dict[str, Any], languages: list[str],
) -> tuple[str, str] | None:
    """
    (track url, language) of the best subtitle track, or None.

    Manual subtitles win over automatic captions; within each, the
    configured languages are tried in order (an "en" preference also
    accepts "en-US" style variants), then vtt over srt.
    """
    for group in ("subtitles", "automatic_captions"):
        tracks: dict[str, list[dict]] = info.get(group) or {}
        for wanted in languages:
            candidates = [
                lang for lang in tracks
                if lang == wanted or lang.split("-")[0] == wanted
            ]
            for lang in sorted(candidates, key=lambda l: l != wanted):
                formats = {t.get("ext"): t.get("url") for t in tracks[lang] if t.get("url")}
                for ext in _SUBTITLE_FORMATS:
                    if formats.get(ext):
                        return formats[ext], lang
    return None


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class SourceExtractor:
    """
    Dispatches on source_type. Collaborators are injected so tests can
    swap the network and storage layers:

        extractor = SourceExtractor(
            file_loader=load_source_file,
            http_client_factory=lambda: httpx.AsyncClient(transport=mock),
        )
    """

    def __init__(
        self,
        file_loader: FileLoader | None = None,
        http_client_factory: HttpClientFactory | None = None,
        url_timeout: float = 15.0,
        transcript_languages: list[str] | None = None,
        video_info: VideoInfoFetcher | None = None,
    ) -> None:
        self._file_loader = file_loader
        self._fetch_info = video_info or fetch_video_info
        self._url_timeout = url_timeout
        self._http_client_factory = http_client_factory or self._default_http_client
        self._languages = list(transcript_languages or ["en"])
        self._handlers: dict[SourceType, Callable[[SourceRecord], Awaitable[ExtractionResult]]] = {
            SourceType.TEXT:      self._extract_text,
            SourceType.URL:       self._extract_url,
            SourceType.YOUTUBE:   self._extract_youtube,
            SourceType.FILE_PDF:  self._extract_file,
            SourceType.FILE_DOCX: self._extract_file,
            SourceType.FILE_TXT:  self._extract_file,
        }

    def _default_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._url_timeout,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        )

    async def extract(self, source: SourceRecord) -> ExtractionResult:
        handler = self._handlers.get(source.source_type)
        if handler is None:
            raise ExtractionError(f"Unsupported source type: {source.source_type}")

        result = await handler(source)
        if not result.text.strip():
            raise ExtractionError(EMPTY_TEXT_REASON)

        logger.info(
            "Extracted | source=%s type=%s words=%d",
            source.id, source.source_type.value, result.word_count,
        )
        return result

    # ---- TEXT ----

    async def _extract_text(self, source: SourceRecord) -> ExtractionResult:
        return parse_text(source.origin)

    # ---- URL ----

    async def _extract_url(self, source: SourceRecord) -> ExtractionResult:
        url = source.origin
        async with self._http_client_factory() as client:
            try:
                response = await client.get(url)
            except httpx.TimeoutException as exc:
                raise ExtractionError(f"Timed out fetching {url}") from exc
            except httpx.HTTPError as exc:
                raise ExtractionError(f"Could not fetch {url}: {exc}") from exc

        if not response.is_success:
            raise ExtractionError(f"HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "")
        metadata: dict[str, Any] = {
            "source_type":  SourceType.URL.value,
            "url":          url,
            "content_type": content_type.split(";")[0].strip() or None,
        }
        if "html" in content_type.lower():
            body, title = html_to_text(response.text)
            if title:
                metadata["title"] = title
        else:
            body = response.text

        text = normalize_text(body)
        return ExtractionResult(text=text, word_count=count_words(text), metadata=metadata)

    # ---- YOUTUBE ----

    async def _extract_youtube(self, source: SourceRecord) -> ExtractionResult:
        url = source.origin
        try:
            info = await asyncio.to_thread(self._fetch_info, url)
        except DownloadError as exc:
            raise ExtractionError(f"Could not read video: {exc}") from exc

        track = pick_subtitle_track(info, self._languages)
        if track is None:
            raise ExtractionError("No transcript available for this video")
        track_url, language = track

        async with self._http_client_factory() as client:
            try:
                response = await client.get(track_url)
            except httpx.HTTPError as exc:
                raise ExtractionError(f"Could not download transcript: {exc}") from exc
        if not response.is_success:
            raise ExtractionError(f"Could not download transcript: HTTP {response.status_code}")

        text = normalize_text(parse_subtitles(response.text))
        return ExtractionResult(
            text=text,
            word_count=count_words(text),
            metadata={
                "source_type":         SourceType.YOUTUBE.value,
                "url":                 url,
                "video_id":            info.get("id"),
                "title":               info.get("title"),
                "duration":            info.get("duration"),
                "transcript_language": language,
            },
        )

    # ---- FILE_* ----

    async def _extract_file(self, source: SourceRecord) -> ExtractionResult:
        if self._file_loader is None:
            raise ExtractionError("File storage is not configured")

        key = source.origin
        if not key.startswith(f"tenants/{source.tenant_id}/"):
            raise ExtractionError("The uploaded file does not belong to this tenant")

        try:
            data = await self._file_loader(source.tenant_id, key)
        except FileNotFoundError as exc:
            raise ExtractionError("The uploaded file could not be found") from exc
        except PermissionError as exc:
            raise ExtractionError("The uploaded file does not belong to this tenant") from exc

        reader = _FILE_READERS[source.source_type]
        label = _FILE_LABELS[source.source_type]
        try:
            raw, extra = await asyncio.to_thread(reader, data)
        except Exception as exc:
            logger.warning("File parse failed | source=%s type=%s error=%s", source.id, label, exc)
            raise ExtractionError(f"Could not read {label} file: {exc}") from exc

        text = normalize_text(raw)
        filename = source.metadata.get("filename") or key.rsplit("/", 1)[-1]
        return ExtractionResult(
            text=text,
            word_count=count_words(text),
            metadata={"source_type": source.source_type.value, "filename": filename, **extra},
        )
