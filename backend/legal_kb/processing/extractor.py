"""
Text Extractor
══════════════

Raw document bytes → ExtractedText(text, language, word_count).

Parser per source type:
  pdf   →  pypdf (native text layer, page texts joined with blank lines)
  docx  →  python-docx (paragraph texts, one per line)
  doc   →  legacy Word 97-2003 binary: printable-run scrape of the OLE
           payload (UTF-16LE and cp1252 candidates, longest wins)

Language is detected with langdetect on the first LANG_SAMPLE_CHARS
characters. Parsers are blocking and run in the default thread executor.

Empty extraction output is an ExtractionError: a training document with
no text is useless to every later phase.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from dataclasses import dataclass

from langdetect import DetectorFactory, LangDetectException, detect

from legal_kb.core.exceptions import ExtractionError

logger = logging.getLogger(__name__)

# Deterministic language detection across runs
DetectorFactory.seed = 0

LANG_SAMPLE_CHARS = 5000

# Printable runs in legacy .doc payloads (letters, digits, punctuation, RO diacritics)
_DOC_RUN_RE = re.compile(r"[\w\s.,;:()\[\]\"'%/&§\-–„”ăâîșşțţĂÂÎȘŞȚŢ]{4,}")
_WORD_RE    = re.compile(r"\w+", re.UNICODE)


@dataclass
class ExtractedText:
    text:       str
    language:   str
    word_count: int


def count_words(text: str) -> int:
    return len(_WORD_RE.findall(text))


def detect_language(text: str) -> str:
    sample = text[:LANG_SAMPLE_CHARS].strip()
    if not sample:
        return "unknown"
    try:
        return detect(sample)
    except LangDetectException:
        return "unknown"


class TextExtractor:
    """
    Stateless extractor.

    Usage:
        extractor = TextExtractor()
        result = await extractor.extract(file_id, "contract.pdf", "pdf", data)
    """

    async def extract(
        self,
        file_id:   str,
        filename:  str,
        file_type: str,
        data:      bytes,
    ) -> ExtractedText:
        if not data:
            raise ExtractionError(f"{filename}: file is empty")

        parser = {
            "pdf":  self._extract_pdf,
            "docx": self._extract_docx,
            "doc":  self._extract_doc,
        }.get(file_type.lower())
        if parser is None:
            raise ExtractionError(f"{filename}: unsupported type '{file_type}'")

        t0 = time.monotonic()
        loop = asyncio.get_running_loop()
        try:
            text = await loop.run_in_executor(None, parser, data)
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"{filename}: {type(exc).__name__}: {exc}") from exc

        text = text.strip()
        if not text:
            raise ExtractionError(f"{filename}: extracted text is empty")

        result = ExtractedText(
            text=text,
            language=detect_language(text),
            word_count=count_words(text),
        )
        logger.debug(
            "Extracted | file=%s type=%s chars=%d words=%d lang=%s elapsed_ms=%.0f",
            file_id, file_type, len(text), result.word_count, result.language,
            (time.monotonic() - t0) * 1000,
        )
        return result

    # ------------------------------------------------------------------
    # Blocking parsers: run in thread executor
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_pdf(data: bytes) -> str:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
        return "\n\n".join(p for p in pages if p.strip())

    @staticmethod
    def _extract_docx(data: bytes) -> str:
        import docx

        document = docx.Document(io.BytesIO(data))
        return "\n".join(para.text for para in document.paragraphs if para.text.strip())

    @staticmethod
    def _extract_doc(data: bytes) -> str:
        if not data.startswith(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"):
            raise ExtractionError("not an OLE2 Word document")

        candidates = []
        for encoding in ("utf-16-le", "cp1252"):
            decoded = data.decode(encoding, errors="ignore")
            runs = [run.strip() for run in _DOC_RUN_RE.findall(decoded)]
            candidates.append("\n".join(run for run in runs if len(run) >= 4))
        return max(candidates, key=len)
