"""Incremental PDF 1.4 serializer.

Objects are serialized one at a time and handed back as bytes together with
their byte offsets, so a caller can forward every chunk to the client as soon
as it exists. Content streams use an indirect `/Length` object written after
the stream, which is what lets the page content be emitted line by line.
"""

PDF_HEADER = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n"


def pdf_string(text: str) -> bytes:
    """Encode `text` as a PDF literal string (WinAnsi/Latin-1, escaped)."""

    raw = text.encode("latin-1", errors="replace")
    escaped = raw.replace(b"\\", b"\\\\").replace(b"(", b"\\(").replace(b")", b"\\)")
    return b"(" + escaped + b")"


class PdfWriter:
    """Tracks offsets of emitted objects and produces the trailing xref."""

    def __init__(self) -> None:
        self.offset = 0
        self._offsets: dict[int, int] = {}
        self._stream_start: int | None = None

    def _advance(self, data: bytes) -> bytes:
        self.offset += len(data)
        return data

    def header(self) -> bytes:
        return self._advance(PDF_HEADER)

    def obj(self, number: int, body: bytes) -> bytes:
        self._offsets[number] = self.offset
        return self._advance(b"%d 0 obj\n" % number + body + b"\nendobj\n")

    def begin_stream(self, number: int, length_ref: int) -> bytes:
        self._offsets[number] = self.offset
        opening = b"%d 0 obj\n<< /Length %d 0 R >>\nstream\n" % (number, length_ref)
        data = self._advance(opening)
        self._stream_start = self.offset
        return data

    def stream_data(self, data: bytes) -> bytes:
        if self._stream_start is None:
            raise RuntimeError("stream_data() outside begin_stream()/end_stream()")
        return self._advance(data)

    def end_stream(self) -> tuple[bytes, int]:
        """Close the open stream; returns the closing bytes and stream length."""

        if self._stream_start is None:
            raise RuntimeError("end_stream() without begin_stream()")
        length = self.offset - self._stream_start
        self._stream_start = None
        return self._advance(b"\nendstream\nendobj\n"), length

    def trailer(self, root: int, info: int | None = None) -> bytes:
        """Cross-reference table and trailer; the final bytes of the file."""

        size = max(self._offsets) + 1
        xref_offset = self.offset
        parts = [b"xref\n0 %d\n" % size, b"0000000000 65535 f \n"]
        for number in range(1, size):
            # Every object number below `size` must have been written.
            parts.append(b"%010d 00000 n \n" % self._offsets[number])
        info_ref = b" /Info %d 0 R" % info if info is not None else b""
        parts.append(b"trailer\n<< /Size %d /Root %d 0 R%s >>\n" % (size, root, info_ref))
        parts.append(b"startxref\n%d\n%%%%EOF\n" % xref_offset)
        return self._advance(b"".join(parts))
