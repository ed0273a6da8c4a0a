from __future__ import annotations

from typing import Iterable, Sequence


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    """Left-aligned plain-text table with a dashed rule under the headers."""
    body = [[str(c) for c in r] for r in rows]
    widths = [
        max([len(h)] + [len(r[i]) for r in body if i < len(r)])
        for i, h in enumerate(headers)
    ]

    def fmt_row(cols: Sequence[str]) -> str:
        cells = [c.ljust(widths[i]) if i < len(widths) else c for i, c in enumerate(cols)]
        return "  ".join(cells).rstrip()

    lines = [fmt_row(headers), fmt_row(["-" * w for w in widths])]
    lines.extend(fmt_row(r) for r in body)
    return "\n".join(lines)
