from __future__ import annotations

import json
import sys
from typing import Any, Iterable, Sequence, TextIO


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} B" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    rows_list = [list(r) for r in rows]
    widths = [len(h) for h in headers]
    for r in rows_list:
        for i, cell in enumerate(r[: len(widths)]):
            widths[i] = max(widths[i], len(cell))

    def fmt_row(cols: Sequence[str]) -> str:
        padded = [c.ljust(widths[i]) if i < len(widths) else c for i, c in enumerate(cols)]
        return "  ".join(padded).rstrip()

    out = [fmt_row(list(headers)), fmt_row(["-" * w for w in widths])]
    out.extend(fmt_row(r) for r in rows_list)
    return "\n".join(out)


class StreamPrinter:
    """Print streamed text, handling both delta and cumulative engines.

    Cumulative engines resend the full text so far; only the new suffix is
    written. When a cumulative update is not an extension of what was printed,
    the remainder is written on a fresh line.
    """

    def __init__(self, *, cumulative: bool, out: TextIO | None = None) -> None:
        self.cumulative = cumulative
        self.out = out or sys.stdout
        self.text = ""

    def write(self, text: str) -> None:
        if not text:
            return
        if not self.cumulative:
            self.text += text
            self.out.write(text)
        elif text.startswith(self.text):
            self.out.write(text[len(self.text) :])
            self.text = text
        else:
            self.out.write("\n" + text)
            self.text = text
        self.out.flush()

    def finish(self) -> None:
        if self.text and not self.text.endswith("\n"):
            self.out.write("\n")
            self.out.flush()
