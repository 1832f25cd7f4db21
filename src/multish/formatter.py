"""Per-stream output decoration."""

from __future__ import annotations

from typing import BinaryIO

from .config import HeaderMode


class OutputFormatter:
    """Formats one host's stdout or stderr byte stream into a sink.

    Every host gets two independent instances, one per stream, so they never
    share buffers. Writes are flushed immediately so partial output stays
    visible if the run is interrupted.
    """

    def __init__(
        self,
        host: str,
        mode: HeaderMode,
        sink: BinaryIO,
        eager_header: bool = True,
    ):
        if mode is HeaderMode.AUTO:
            raise ValueError("header mode must be resolved before formatting")
        self.host = host
        self.mode = mode
        self.sink = sink
        self.eager_header = eager_header
        self._prefix = f"{host}: ".encode()
        self._started = False
        self._at_line_start = True
        self._finished = False

    def __enter__(self) -> OutputFormatter:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.finish()

    def start(self) -> None:
        """Emit the multiline header now if this formatter is eager."""
        if self.eager_header:
            self._begin()

    def _begin(self) -> None:
        if self._started:
            return
        self._started = True
        if self.mode is HeaderMode.MULTILINE:
            self._emit(f"=== {self.host} ===\n".encode())

    def write(self, data: bytes) -> None:
        """Write a chunk of the stream; chunks need not end on a line boundary."""
        if not data:
            return
        self._begin()
        if self.mode is HeaderMode.INLINE:
            data = self._prefix_lines(data)
        self._at_line_start = data.endswith(b"\n")
        self._emit(data)

    def _prefix_lines(self, data: bytes) -> bytes:
        pieces = data.split(b"\n")
        out = []
        at_line_start = self._at_line_start
        for i, piece in enumerate(pieces):
            last = i == len(pieces) - 1
            if last and not piece:
                break
            if at_line_start:
                out.append(self._prefix)
            out.append(piece if last else piece + b"\n")
            at_line_start = not last
        return b"".join(out)

    def finish(self) -> None:
        """Close the stream's decoration; the sink itself stays open."""
        if self._finished:
            return
        self._finished = True
        if not self._started or self.mode is HeaderMode.NONE:
            return
        tail = b"" if self._at_line_start else b"\n"
        if self.mode is HeaderMode.MULTILINE:
            tail += b"\n"
        if tail:
            self._emit(tail)

    def _emit(self, data: bytes) -> None:
        self.sink.write(data)
        self.sink.flush()
